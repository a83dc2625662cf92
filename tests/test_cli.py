from unittest.mock import MagicMock, patch

import pytest

from soaklauncher.cli import build_controller, build_parser, main
from soaklauncher.config import load_settings
from soaklauncher.keys import KeyManager
from soaklauncher.types import RunOutcome, RunState

RUN_ENV = {
    "DISTRO": "debian-11",
    "LOG_RATE": "1000",
    "LOG_SIZE_IN_BYTES": "1000",
    "TTL": "100m",
}
FULL_ENV = dict(
    RUN_ENV,
    PROVISIONING_API_KEY="token",
    PROVISIONING_BASE_URL="https://provisioning.test/v1/",
    PROJECT="my_project",
    ZONE="us-central1-b",
)


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.env_file is None
    assert not args.verbose
    assert not args.dry_run


@patch.dict("os.environ", RUN_ENV, clear=True)
def test_dry_run_prints_scripts(capsys):
    assert main(["--dry-run"]) == 0

    out = capsys.readouterr().out
    assert "# platform: debian-11 (posix)" in out
    assert '--log-rate="1000"' in out
    assert "mylog_source" in out
    assert "# stage: start-workload" in out


@patch.dict("os.environ", dict(RUN_ENV, DISTRO="windows-2022"), clear=True)
def test_dry_run_windows(capsys):
    assert main(["--dry-run"]) == 0
    out = capsys.readouterr().out
    assert "(windows)" in out
    assert "Invoke-WmiMethod" in out
    assert "not available on Windows" in out


@patch.dict("os.environ", {"DISTRO": "debian-11"}, clear=True)
def test_missing_parameters_exit_non_zero():
    assert main([]) == 1


@patch.dict("os.environ", RUN_ENV, clear=True)
def test_missing_credentials_exit_non_zero():
    assert main([]) == 1


@patch.dict("os.environ", dict(RUN_ENV, LOG_RATE="fast"), clear=True)
def test_invalid_parameter_exits_before_anything_remote():
    with patch("soaklauncher.cli.build_controller") as mock_build:
        assert main([]) == 1
    mock_build.assert_not_called()


def test_missing_env_file(tmp_path):
    with patch.dict("os.environ", {}, clear=True):
        assert main(["--env-file", str(tmp_path / "nope.env")]) == 1


@pytest.mark.parametrize(
    "outcome,expected",
    [
        (RunOutcome(state=RunState.VERIFIED, history=[RunState.VERIFIED]), 0),
        (RunOutcome(state=RunState.FAILED, failed_stage=RunState.PROVISIONED, error=RuntimeError("quota")), 1),
    ],
)
@patch.dict("os.environ", FULL_ENV, clear=True)
def test_main_returns_outcome_exit_code(outcome, expected):
    controller = MagicMock()
    controller.run.return_value = outcome

    with patch("soaklauncher.cli.build_controller", return_value=controller) as mock_build:
        assert main([]) == expected

    settings = mock_build.call_args.args[0]
    assert settings.project == "my_project"
    config = controller.run.call_args.args[0]
    assert config.platform == "debian-11"
    assert config.log_rate == 1000


@patch.dict("os.environ", FULL_ENV, clear=True)
def test_setup_failure_releases_keys():
    with patch("soaklauncher.cli.build_controller", side_effect=ValueError("bad url")), \
         patch("soaklauncher.cli.cleanup_keys") as mock_cleanup:
        assert main([]) == 1
    mock_cleanup.assert_called_once_with()


@patch("soaklauncher.cli.get_key_manager")
def test_build_controller_wires_settings(mock_keys):
    mock_keys.return_value = KeyManager("soak")
    settings = load_settings(dict(FULL_ENV, COMMAND_TIMEOUT="5m", TRANSPORT_RETRIES="2", RUN_TIMEOUT="30m"))

    controller = build_controller(settings)

    assert controller.executor.command_timeout == 300
    assert controller.executor.max_attempts == 2
    assert controller.run_timeout == 1800
    assert controller.executor.keys is mock_keys.return_value
    mock_keys.assert_called_once_with("soak")
    assert not mock_keys.return_value.created

