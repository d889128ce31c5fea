import pytest

from clinicdesk import config

REQUIRED = {
    "SCHEDULER_BASE_URL": "https://scheduler.example.com/v1/",
    "SCHEDULER_API_KEY": "key",
    "OPENAI_API_KEY": "sk-test",
    "PUBLIC_BASE_URL": "https://voice.example.com/",
}


@pytest.fixture
def env(monkeypatch):
    for var in config.REQUIRED_VARS + config.OPTIONAL_VARS:
        monkeypatch.delenv(var, raising=False)
    for var, value in REQUIRED.items():
        monkeypatch.setenv(var, value)
    return monkeypatch


class TestValidateConfig:
    def test_passes_with_required_vars(self, env):
        config.validate_config()

    def test_missing_required_var_exits(self, env, capsys):
        env.delenv("SCHEDULER_API_KEY")
        with pytest.raises(SystemExit) as exc:
            config.validate_config()
        assert exc.value.code == 1
        assert "SCHEDULER_API_KEY" in capsys.readouterr().err

    def test_empty_value_counts_as_missing(self, env):
        env.setenv("OPENAI_API_KEY", "")
        with pytest.raises(SystemExit):
            config.validate_config()


class TestLoadSettings:
    def test_defaults(self, env):
        settings = config.load_settings()
        assert settings.scheduler_base_url == "https://scheduler.example.com/v1"
        assert settings.public_base_url == "https://voice.example.com"
        assert settings.practitioner_id is None
        assert settings.timezone == "Australia/Brisbane"
        assert settings.cache_ttl_seconds == 20.0
        assert settings.name_similarity_threshold == 0.5
        assert settings.knowledge_file == ""

    def test_overrides(self, env):
        env.setenv("SCHEDULER_PRACTITIONER_ID", "p7")
        env.setenv("CLINIC_NAME", "Harbour Medical")
        env.setenv("CLINIC_TIMEZONE", "Australia/Sydney")
        env.setenv("NAME_SIMILARITY_THRESHOLD", "0.6")
        env.setenv("RETRY_MAX_ATTEMPTS", "5")
        env.setenv("CLINIC_KNOWLEDGE_FILE", "/etc/clinicdesk/knowledge.json")
        settings = config.load_settings()
        assert settings.practitioner_id == "p7"
        assert settings.clinic_name == "Harbour Medical"
        assert settings.timezone == "Australia/Sydney"
        assert settings.name_similarity_threshold == 0.6
        assert settings.retry_max_attempts == 5
        assert settings.knowledge_file == "/etc/clinicdesk/knowledge.json"

    def test_bad_number_falls_back(self, env):
        env.setenv("AVAILABILITY_CACHE_TTL", "soon")
        assert config.load_settings().cache_ttl_seconds == 20.0
