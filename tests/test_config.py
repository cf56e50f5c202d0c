"""Tests for worker settings loading."""

import logging

from blackboard.config import WorkerSettings, load_settings


def test_defaults_when_file_missing(tmp_path):
    assert load_settings(tmp_path / "missing.toml", env={}) == WorkerSettings()


def test_file_values_are_coerced(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        "[worker]\n"
        'image = "custom:2"\n'
        'memory = "2g"\n'
        'max_iterations = "80"\n'
        "grace_period = 5\n"
        "concurrency = 4\n"
        'auth_mode = "oauth"\n'
    )
    settings = load_settings(path, env={})
    assert settings.image == "custom:2"
    assert settings.memory == "2g"
    assert settings.max_iterations == 80
    assert settings.grace_period == 5.0
    assert isinstance(settings.grace_period, float)
    assert settings.concurrency == 4
    assert settings.auth_mode == "oauth"


def test_environment_wins_over_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('[worker]\nimage = "from-file"\nmax_iterations = 10\n')
    settings = load_settings(
        path,
        env={"BLACKBOARD_WORKER_IMAGE": "from-env", "BLACKBOARD_MAX_ITERATIONS": "12"},
    )
    assert settings.image == "from-env"
    assert settings.max_iterations == 12


def test_bad_values_are_skipped_with_warning(tmp_path, caplog):
    path = tmp_path / "config.toml"
    path.write_text('[worker]\nconcurrency = "many"\ncolour = "blue"\nauth_mode = "password"\n')
    with caplog.at_level(logging.WARNING, logger="blackboard.config"):
        settings = load_settings(path, env={})
    assert settings.concurrency == WorkerSettings.concurrency
    assert settings.auth_mode == "env"
    messages = caplog.text
    assert "concurrency" in messages
    assert "colour" in messages
    assert "password" in messages


def test_malformed_file_falls_back_to_defaults(tmp_path, caplog):
    path = tmp_path / "config.toml"
    path.write_text("[worker\nimage = ")
    with caplog.at_level(logging.WARNING, logger="blackboard.config"):
        assert load_settings(path, env={}) == WorkerSettings()
    assert "Failed to parse" in caplog.text


def test_non_table_worker_section_ignored(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('worker = "nope"\n')
    assert load_settings(path, env={}) == WorkerSettings()
