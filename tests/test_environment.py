import pytest

from appletv_enhanced.environment import (
    BLOCK_RETRY_SECONDS,
    EnvironmentChecker,
    EnvironmentConfig,
    parse_freeze,
    parse_version,
)


class Blocked(Exception):
    pass


class FakeHost:
    """Answers the commands the checker runs, creating venv files on demand."""

    def __init__(self, storage, openssl='OpenSSL 3.0.13 30 Jan 2024', python='Python 3.11.9',
                 venv_home='/usr', system_home='/usr', pip='24.0', freeze='pyatv==0.16.0\n'):
        self.venv = storage / '.venv'
        self.openssl = openssl
        self.python = python
        self.venv_home = venv_home
        self.system_home = system_home
        self.pip = pip
        self.freeze = freeze
        self.calls = []

    def create_venv(self):
        (self.venv / 'bin').mkdir(parents=True, exist_ok=True)
        for name in ('bin/python3', 'bin/pip3', 'pyvenv.cfg'):
            (self.venv / name).write_text('')
        self.venv_home = self.system_home

    async def run(self, executable, args=(), cwd=None, hide_output=False, log=None):
        executable = str(executable)
        args = list(args)
        self.calls.append([executable] + args)
        if executable == 'openssl':
            return self.openssl, '', 0
        if args[:2] == ['-m', 'venv']:
            self.create_venv()
            return '', '', 0
        if args[:1] == ['-c']:
            home = self.venv_home if executable.startswith(str(self.venv)) else self.system_home
            return home + '\n', '', 0
        if executable == str(self.venv / 'bin' / 'pip3'):
            if args == ['--version']:
                return f'pip {self.pip} from /site-packages/pip (python 3.11)\n', '', 0
            if args == ['freeze']:
                return self.freeze, '', 0
            return '', '', 0
        if args == ['--version']:
            return self.python + '\n', '', 0
        return '', '', 0

    def mutating_calls(self):
        return [c for c in self.calls if c[1:3] == ['-m', 'venv'] or 'install' in c]


async def blocked_sleep(seconds):
    assert seconds == BLOCK_RETRY_SECONDS
    raise Blocked()


def make_checker(tmp_path, host, latest_pip='24.0'):
    async def fetch_latest_pip(log=None):
        return latest_pip

    return EnvironmentChecker(
        tmp_path, run=host.run, fetch_latest_pip=fetch_latest_pip, sleep=blocked_sleep
    )


def test_parse_version():
    assert parse_version('3.0.13') == (3, 0, 13)
    assert parse_version('1.1.1w') == (1, 1, 1)
    assert parse_version('3.0.0') >= parse_version('3.0.0')


def test_parse_freeze_normalizes_names():
    packages = parse_freeze('PyYAML==6.0\ntyping_extensions==4.9.0\n-e git+https://x\n\n# comment\n')
    assert packages == {'pyyaml': '6.0', 'typing-extensions': '4.9.0'}


@pytest.mark.asyncio
async def test_fresh_host_gets_venv_and_requirements(tmp_path):
    host = FakeHost(tmp_path, freeze='')
    checker = make_checker(tmp_path, host)

    config = await checker.ensure()

    assert config == EnvironmentConfig.default()
    assert checker.is_venv_created()
    assert [str(tmp_path / '.venv' / 'bin' / 'pip3'), 'install', '-r', str(config.requirements_path)] in host.calls


@pytest.mark.asyncio
async def test_ensure_is_idempotent(tmp_path):
    host = FakeHost(tmp_path)
    checker = make_checker(tmp_path, host)
    await checker.ensure()

    host.calls = []
    await checker.ensure()
    assert host.mutating_calls() == []


@pytest.mark.asyncio
async def test_force_recreate_rebuilds_existing_venv(tmp_path):
    host = FakeHost(tmp_path)
    host.create_venv()
    checker = make_checker(tmp_path, host)

    await checker.ensure(force_venv_recreate=True)
    assert [c for c in host.calls if c[1:3] == ['-m', 'venv']] == [
        ['python3', '-m', 'venv', str(tmp_path / '.venv'), '--clear']
    ]


@pytest.mark.asyncio
async def test_old_openssl_selects_legacy_manifest(tmp_path):
    host = FakeHost(tmp_path, openssl='OpenSSL 1.1.1w  11 Sep 2023', freeze='')
    checker = make_checker(tmp_path, host)

    config = await checker.ensure()

    assert config.openssl_legacy
    assert config.requirements_path.parent.name == 'openssl_legacy'
    assert '3.13' not in config.supported_python_versions
    assert config.requirements_path.exists()


@pytest.mark.asyncio
async def test_unparseable_openssl_falls_back_to_legacy(tmp_path):
    host = FakeHost(tmp_path, openssl='')
    checker = make_checker(tmp_path, host)
    config = await checker._check_openssl()
    assert config == EnvironmentConfig.legacy()


@pytest.mark.asyncio
async def test_unsupported_python_blocks(tmp_path, caplog):
    host = FakeHost(tmp_path, python='Python 3.8.10')
    checker = make_checker(tmp_path, host)

    with pytest.raises(Blocked):
        await checker.ensure()
    assert 'Python 3.8.10 is installed. However, only Python 3.9 to 3.13 is supported.' in caplog.text
    assert host.mutating_calls() == []


@pytest.mark.asyncio
async def test_newest_python_blocks_in_legacy_mode(tmp_path):
    host = FakeHost(tmp_path, openssl='OpenSSL 1.1.1w', python='Python 3.13.1')
    checker = make_checker(tmp_path, host)
    with pytest.raises(Blocked):
        await checker.ensure()


@pytest.mark.asyncio
async def test_missing_venv_module_blocks(tmp_path, caplog):
    host = FakeHost(tmp_path)
    host.create_venv = lambda: None
    checker = make_checker(tmp_path, host)

    with pytest.raises(Blocked):
        await checker.ensure()
    assert 'virtualenv python module is not installed' in caplog.text


@pytest.mark.asyncio
async def test_foreign_python_home_recreates_venv(tmp_path):
    host = FakeHost(tmp_path)
    host.create_venv()
    host.venv_home = '/opt/other-python'
    checker = make_checker(tmp_path, host)

    await checker.ensure()
    assert len([c for c in host.calls if c[1:3] == ['-m', 'venv']]) == 1


@pytest.mark.asyncio
async def test_outdated_pip_is_updated(tmp_path):
    host = FakeHost(tmp_path)
    host.create_venv()
    checker = make_checker(tmp_path, host, latest_pip='25.1')

    await checker.ensure()
    assert [str(tmp_path / '.venv' / 'bin' / 'pip3'), 'install', '--upgrade', 'pip'] in host.calls


@pytest.mark.asyncio
async def test_pip_update_skipped_without_pypi(tmp_path):
    host = FakeHost(tmp_path)
    host.create_venv()
    checker = make_checker(tmp_path, host, latest_pip=None)

    await checker.ensure()
    assert host.mutating_calls() == []


@pytest.mark.asyncio
async def test_requirement_version_mismatch_installs(tmp_path):
    host = FakeHost(tmp_path, freeze='pyatv==0.15.0\n')
    host.create_venv()
    checker = make_checker(tmp_path, host)

    await checker.ensure()
    assert any(c[1:3] == ['install', '-r'] for c in host.calls)
