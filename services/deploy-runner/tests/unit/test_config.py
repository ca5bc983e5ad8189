from deploy_runner.config import Settings, get_settings


def test_defaults(monkeypatch):
    for var in ("RUNNER_PORT", "SETTLE_DELAY_SEC", "LABEL_PREFIX", "DEFAULT_MEMORY_LIMIT"):
        monkeypatch.delenv(var, raising=False)

    settings = Settings(_env_file=None)

    assert settings.service_name == "deploy-runner"
    assert settings.runner_port == 3002
    assert settings.settle_delay_sec == 5.0
    assert settings.health_check_timeout_sec == 5.0
    assert settings.stop_grace_period_sec == 10
    assert settings.pipeline_timeout_sec == 600.0
    assert settings.log_tail_lines == 500
    assert settings.default_memory_limit == "512Mi"
    assert settings.build_context_excludes == [".git", "node_modules"]


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("RUNNER_PORT", "4000")
    monkeypatch.setenv("LABEL_PREFIX", "acme")
    monkeypatch.setenv("BUILD_CONTEXT_EXCLUDES", '[".git", "dist"]')

    settings = Settings(_env_file=None)

    assert settings.runner_port == 4000
    assert settings.label_prefix == "acme"
    assert settings.build_context_excludes == [".git", "dist"]


def test_get_settings_is_cached():
    assert get_settings() is get_settings()
