import json

import pytest
from typer.testing import CliRunner

from model_depot import __version__
from model_depot.cli.app import app

runner = CliRunner()


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    return tmp_path


@pytest.fixture
def installed_tiny(env):
    """Lays out an installed 'tiny' speech model as a previous run would."""
    root = env / "data" / "model-depot"
    model = root / "models" / "ggml-tiny.en.bin"
    model.parent.mkdir(parents=True)
    model.write_bytes(b"ggml")
    (root / "models_metadata.json").write_text(
        json.dumps(
            {
                "installedModels": {"tiny": {"path": str(model), "installedAt": 1}},
                "currentModel": "tiny",
            }
        )
    )
    return model


def test_version(env):
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_init_writes_config(env):
    result = runner.invoke(app, ["init"])

    assert result.exit_code == 0
    config_file = env / "config" / "model-depot" / "config.ini"
    assert config_file.is_file()
    assert "metered_threshold_mb =" in config_file.read_text()


def test_init_refuses_overwrite_without_confirmation(env):
    runner.invoke(app, ["init"])

    result = runner.invoke(app, ["init"], input="n\n")

    assert result.exit_code != 0


def test_show_config(env):
    result = runner.invoke(app, ["--show-config"])

    assert result.exit_code == 0
    assert "network_mode" in result.output


def test_list_shows_catalog(env, installed_tiny):
    result = runner.invoke(app, ["list"])

    assert result.exit_code == 0
    for key in ("tiny", "base", "medium", "qwen2.5-0.5b"):
        assert key in result.output
    assert "Installed" in result.output


def test_current_prints_path(env, installed_tiny):
    result = runner.invoke(app, ["current", "speech"])

    assert result.exit_code == 0
    assert str(installed_tiny) in result.output.replace("\n", "")


def test_current_without_selection_fails(env):
    result = runner.invoke(app, ["current", "language"])

    assert result.exit_code == 1


def test_use_rejects_uninstalled(env, installed_tiny):
    result = runner.invoke(app, ["use", "base"])

    assert result.exit_code == 1
    assert "not installed" in result.output


def test_delete_clears_selection(env, installed_tiny):
    result = runner.invoke(app, ["delete", "tiny"])

    assert result.exit_code == 0
    assert not installed_tiny.exists()
    record = json.loads(
        (env / "data" / "model-depot" / "models_metadata.json").read_text()
    )
    assert record == {"installedModels": {}, "currentModel": None}


def test_unknown_key_fails(env):
    result = runner.invoke(app, ["use", "large-v3"])

    assert result.exit_code != 0
