#
# Copyright 2025 The AppleTV Enhanced contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#

"""Command-line interface for AppleTV Enhanced."""

import asyncio
import argparse
import logging
import logging.handlers
import os
import signal
import sys
from pathlib import Path

from .platform import AppleTVPlatform, PlatformConfig, DISCOVERY_INTERVAL_SECONDS, HAP_PORT_BASE

# Logger will be configured in main() based on daemon/console mode
logger = logging.getLogger(__name__)


async def run_server(args):
    """Run the platform until a shutdown signal arrives."""
    config = PlatformConfig.load(args.config)
    if args.python:
        config.python_executable = args.python
    if args.force_venv_recreate:
        config.force_venv_recreate = True

    platform = AppleTVPlatform(
        config,
        args.storage,
        discovery_interval=args.discovery_interval,
        hap_port_base=args.hap_port_base,
    )

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def handle_signal(signum):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        shutdown_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, handle_signal, signum)

    run_task = asyncio.create_task(platform.run())
    shutdown_task = asyncio.create_task(shutdown_event.wait())
    try:
        done, _pending = await asyncio.wait({run_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        if run_task in done:
            # Surfaces a startup failure
            run_task.result()
    except Exception as e:
        logger.error(f"ERROR: Failed to run AppleTV Enhanced: {e}")
        raise
    finally:
        logger.info("Performing cleanup...")
        shutdown_task.cancel()
        await platform.stop()
        if not run_task.done():
            run_task.cancel()
            try:
                await run_task
            except asyncio.CancelledError:
                pass

        if args.pid_file:
            pid_path = Path(args.pid_file)
            try:
                if pid_path.exists():
                    pid_path.unlink()
                    logger.info(f"PID file removed: {pid_path}")
            except OSError as e:
                logger.warning(f"Failed to remove PID file: {e}")


def configure_logging(args):
    if args.syslog:
        # Network address (host:port) or Unix socket path (e.g., /dev/log)
        syslog_address = args.syslog
        if ':' in syslog_address and not syslog_address.startswith('/'):
            host, port = syslog_address.rsplit(':', 1)
            syslog_address = (host, int(port))

        try:
            syslog_handler = logging.handlers.SysLogHandler(
                address=syslog_address,
                facility=logging.handlers.SysLogHandler.LOG_DAEMON
            )
            syslog_handler.setFormatter(logging.Formatter(
                'appletv-enhanced[%(process)d]: %(levelname)s %(message)s'
            ))

            root_logger = logging.getLogger()
            root_logger.setLevel(logging.INFO)
            # Silence console output in syslog mode
            root_logger.handlers = [syslog_handler]

            logger.info("Logging to syslog: %s", args.syslog)
        except OSError as e:
            logging.basicConfig(
                level=logging.INFO,
                format='%(asctime)s %(levelname)s %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S',
                stream=sys.stdout,
                force=True
            )
            logger.error(f"Failed to connect to syslog ({args.syslog}): {e}")
            logger.info("Falling back to console logging")
    elif args.daemon:
        # No timestamp, syslog/journald adds it
        logging.basicConfig(
            level=logging.INFO,
            format='%(levelname)s %(message)s',
            stream=sys.stdout,
            force=True
        )
    else:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s %(levelname)s %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
            stream=sys.stdout,
            force=True
        )

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.info("Verbose logging enabled")

    # The PIN entry page is served by uvicorn, its request logging is noise
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="AppleTV Enhanced - Apple TVs as HomeKit televisions via pyatv",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Discover Apple TVs and publish them to HomeKit (console mode)
  python -m appletv_enhanced
  appletv-enhanced

  # Custom storage directory and config file
  appletv-enhanced --storage /var/lib/appletv-enhanced --config ./appletv.json

  # Use a specific Python to build the pyatv environment, rebuilding it
  appletv-enhanced --python /usr/bin/python3.12 --force-venv-recreate

  # Run as system daemon
  appletv-enhanced --daemon --pid-file /var/run/appletv-enhanced.pid

  # Send logs to syslog
  appletv-enhanced --syslog /dev/log

  # Debug mode with verbose logging
  appletv-enhanced --verbose

Config file (JSON, all keys optional):
  {"name": "...", "blacklist": ["AA:BB:CC:DD:EE:FF"],
   "mediaTypes": ["music", "video"], "deviceStates": ["playing", "paused"],
   "pythonExecutable": "python3", "forceVenvRecreate": false}
        """
    )
    parser.add_argument("--storage", default="~/.appletv-enhanced",
                        help="Directory for credentials, settings and the pyatv venv (default: ~/.appletv-enhanced)")
    parser.add_argument("--config",
                        help="Path to a JSON config file")
    parser.add_argument("--python",
                        help="Python executable used to create the pyatv venv (default: python3)")
    parser.add_argument("--force-venv-recreate", action="store_true",
                        help="Recreate the pyatv venv on startup")
    parser.add_argument("--discovery-interval", type=float, default=DISCOVERY_INTERVAL_SECONDS,
                        help=f"Seconds between device scans (default: {DISCOVERY_INTERVAL_SECONDS})")
    parser.add_argument("--hap-port-base", type=int, default=HAP_PORT_BASE,
                        help=f"First HomeKit accessory server port, one per Apple TV (default: {HAP_PORT_BASE})")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable verbose logging (DEBUG level)")
    parser.add_argument("--daemon", action="store_true",
                        help="Run in daemon mode (logging without timestamps, auto-enables --pid-file)")
    parser.add_argument("--syslog",
                        help="Send logs to syslog instead of stdout (e.g., /dev/log, localhost:514, or remote.server:514)")
    parser.add_argument("--pid-file",
                        help="Write process ID to specified file (useful for daemon mode)")
    return parser


def main():
    """Main entry point for the CLI."""
    args = build_parser().parse_args()

    # Daemon mode implies PID file if not specified
    if args.daemon and not args.pid_file:
        args.pid_file = "/var/run/appletv-enhanced.pid"

    configure_logging(args)

    if args.pid_file:
        pid_path = Path(args.pid_file)
        try:
            pid_path.write_text(str(os.getpid()))
            logger.info(f"PID file written: {pid_path}")
        except OSError as e:
            logger.error(f"Failed to write PID file: {e}")
            sys.exit(1)

    try:
        asyncio.run(run_server(args))
    except KeyboardInterrupt:
        logger.info("*** Shutdown complete ***")
    except Exception as e:
        logger.error(f"ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
