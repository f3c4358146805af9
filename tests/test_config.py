"""Tests for e-log configuration."""

import json

import pytest
import yaml

from gxp_elog.config import (
    DEFAULT_APPROVE_REASONS,
    ChecksumAlgorithm,
    ELogConfig,
    configure,
    get_config,
    set_config,
)


@pytest.fixture(autouse=True)
def reset_config():
    set_config(None)
    yield
    set_config(None)


class TestDefaults:
    """Secure defaults."""

    def test_defaults(self):
        config = ELogConfig()

        assert config.environment == "production"
        assert config.approver_roles == ["QA", "Admin"]
        assert config.user_admin_roles == ["Admin"]
        assert config.approve_reasons == DEFAULT_APPROVE_REASONS
        assert config.checksum_algorithm == ChecksumAlgorithm.SHA256
        assert config.password_scheme == "pbkdf2_sha256"
        assert config.audit_default_limit == 100

    def test_to_dict_is_serializable(self):
        data = ELogConfig().to_dict()
        assert json.loads(json.dumps(data))["checksum_algorithm"] == "sha256"


class TestValidation:
    """Field validators."""

    def test_environment_normalized(self):
        assert ELogConfig(environment="Development").environment == "development"

    def test_invalid_environment(self):
        with pytest.raises(ValueError, match="Environment must be one of"):
            ELogConfig(environment="test")

    def test_invalid_timezone(self):
        with pytest.raises(ValueError, match="Unknown timezone"):
            ELogConfig(timezone="Mars/Olympus_Mons")

    def test_log_level_normalized(self):
        assert ELogConfig(log_level="debug").log_level == "DEBUG"

    def test_reasons_cleaned(self):
        config = ELogConfig(submit_reasons=[" Signed ", "Signed", "", "Checked"])
        assert config.submit_reasons == ["Signed", "Checked"]

    def test_reasons_required(self):
        with pytest.raises(ValueError):
            ELogConfig(approve_reasons=["  "])

    def test_unknown_role(self):
        with pytest.raises(ValueError, match="Unknown roles"):
            ELogConfig(approver_roles=["QA", "Auditor"])

    def test_minimum_password_length(self):
        with pytest.raises(ValueError):
            ELogConfig(password_min_length=2)


class TestLoading:
    """Environment and file sources."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("ELOG_DATABASE_URL", "postgresql://elog@db/elog")
        monkeypatch.setenv("ELOG_ECHO_SQL", "yes")
        monkeypatch.setenv("ELOG_APPROVER_ROLES", "QA, Admin, Supervisor")
        monkeypatch.setenv("ELOG_AUDIT_MAX_LIMIT", "250")
        monkeypatch.setenv("ELOG_CHECKSUM_ALGORITHM", "sha512")

        config = ELogConfig.from_env()

        assert config.database_url == "postgresql://elog@db/elog"
        assert config.echo_sql is True
        assert config.approver_roles == ["QA", "Admin", "Supervisor"]
        assert config.audit_max_limit == 250
        assert config.checksum_algorithm == ChecksumAlgorithm.SHA512

    def test_from_yaml_file(self, tmp_path):
        path = tmp_path / "elog.yaml"
        path.write_text(
            yaml.safe_dump({"application_name": "Line 3", "timezone": "Europe/Berlin"})
        )

        config = ELogConfig.from_file(path)

        assert config.application_name == "Line 3"
        assert config.timezone == "Europe/Berlin"

    def test_from_json_file(self, tmp_path):
        path = tmp_path / "elog.json"
        path.write_text(json.dumps({"environment": "validation"}))

        assert ELogConfig.from_file(path).environment == "validation"

    def test_file_must_hold_mapping(self, tmp_path):
        path = tmp_path / "elog.yml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ValueError, match="must contain a mapping"):
            ELogConfig.from_file(path)


class TestGlobalConfig:
    """Process-wide configuration."""

    def test_get_config_loads_env(self, monkeypatch):
        monkeypatch.setenv("ELOG_APPLICATION_NAME", "From Env")
        assert get_config().application_name == "From Env"

    def test_set_and_get(self):
        config = ELogConfig(application_name="Explicit")
        set_config(config)
        assert get_config() is config

    def test_configure_merges(self):
        set_config(ELogConfig(application_name="Base", timezone="Europe/Paris"))

        config = configure(log_id_prefix="ELN")

        assert config.log_id_prefix == "ELN"
        assert config.timezone == "Europe/Paris"
        assert get_config() is config

    def test_configure_validates(self):
        with pytest.raises(ValueError):
            configure(environment="nowhere")
