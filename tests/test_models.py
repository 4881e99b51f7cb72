"""Tests for payload validation, step flags and settings."""
import pytest

from errors import InvalidStep, PayloadError
from models import (
    JobType,
    ProvisioningRecord,
    ProvisionParams,
    RecordStatus,
    SingleStepPayload,
    Step,
    StepFlags,
    parse_payload,
)
from settings import Settings, load_settings


class TestProvisionParams:
    def test_defaults_and_normalization(self, params):
        params["domain"] = "Example.COM"
        parsed = ProvisionParams.from_dict(params)
        assert parsed.domain == "example.com"
        assert parsed.php_version == "8.3"
        assert parsed.vhost_template == "Laravel 12"
        assert parsed.database_host == "localhost"
        assert parsed.install.run_migrations
        assert not parsed.install.run_seeders
        assert parsed.site_root == "/home/example/htdocs/example.com"

    @pytest.mark.parametrize("key, value", [
        ("domain", "not a domain"),
        ("domain", None),
        ("site_user", "Root User"),
        ("database_name", "drop;table"),
        ("site_user_password", "short"),
        ("database_password", ""),
    ])
    def test_rejects_bad_fields(self, params, key, value):
        params[key] = value
        with pytest.raises(PayloadError):
            ProvisionParams.from_dict(params)

    def test_rejects_unknown_install_option(self, params):
        params["install"] = {"run_tests": True}
        with pytest.raises(PayloadError, match="run_tests"):
            ProvisionParams.from_dict(params)

    def test_payload_errors_are_value_errors(self):
        with pytest.raises(ValueError):
            ProvisionParams.from_dict("example.com")


class TestParsePayload:
    def test_unknown_job_type(self):
        with pytest.raises(PayloadError):
            parse_payload("reboot", {})

    def test_single_step_payload(self, params):
        payload = parse_payload(JobType.SINGLE_STEP_RETRY, {
            "record_id": 3,
            "step": "clone_repository",
            "params": params,
            "baseline": {"site_created": 1, "database_created": 0},
        })
        assert payload.step is Step.CLONE_REPOSITORY
        assert payload.baseline == StepFlags(site_created=True)
        assert isinstance(payload, SingleStepPayload)

    def test_single_step_rejects_unknown_step(self, params):
        with pytest.raises(InvalidStep):
            parse_payload(JobType.SINGLE_STEP_RETRY, {"record_id": 3, "step": "reboot", "params": params})

    def test_single_step_requires_integer_record_id(self, params):
        with pytest.raises(PayloadError):
            parse_payload(JobType.SINGLE_STEP_RETRY, {"record_id": "3", "step": "create_site", "params": params})

    def test_accepts_dataclass_payloads(self, params):
        parsed = ProvisionParams.from_dict(params)
        assert parse_payload(JobType.FULL_PROVISION, parsed) == parsed


class TestSteps:
    def test_steps_are_in_pipeline_order(self):
        assert [s.flag for s in Step] == [
            "site_created", "database_created", "credentials_copied",
            "repository_cloned", "environment_configured", "install_completed",
        ]

    def test_parse(self):
        assert Step.parse("create_site") is Step.CREATE_SITE
        with pytest.raises(InvalidStep, match="create_everything"):
            Step.parse("create_everything")

    def test_merge_never_clears(self):
        left = StepFlags(site_created=True)
        right = StepFlags(database_created=True)
        assert left.merge(right) == StepFlags(site_created=True, database_created=True)
        assert left.merge(StepFlags()) == left

    def test_mark(self):
        flags = StepFlags().mark(Step.CREATE_SITE)
        assert flags.is_set(Step.CREATE_SITE)
        assert not flags.mark(Step.CREATE_SITE, False).is_set(Step.CREATE_SITE)
        assert not flags.all_done()


class TestRecordView:
    def test_passwords_are_masked(self, params):
        record = ProvisioningRecord(id=1, domain="example.com", status=RecordStatus.FAILED, params=params)
        data = record.to_dict()
        assert data["params"]["site_user_password"] == "***"
        assert data["params"]["database_password"] == "***"
        assert data["params"]["site_user"] == "example"
        assert params["site_user_password"] == "s3cret-pass"
        assert data["steps"]["site_created"] is False


class TestSettings:
    def test_defaults(self, storage):
        assert load_settings(storage) == Settings()

    def test_config_table_values_are_coerced(self, storage):
        storage.set_config("poll_interval", "1.5")
        storage.set_config("max_attempts", "5")
        storage.set_config("clpctl_path", "/opt/clp/clpctl")
        settings = load_settings(storage)
        assert settings.poll_interval == 1.5
        assert settings.max_attempts == 5
        assert settings.clpctl_path == "/opt/clp/clpctl"

    def test_overrides_win(self, storage):
        storage.set_config("backoff_base", "10")
        assert load_settings(storage, backoff_base=60).backoff_base == 60
        assert load_settings(storage, backoff_base=None).backoff_base == 10

    def test_invalid_value_falls_back_to_default(self, storage, caplog):
        storage.set_config("max_attempts", "many")
        assert load_settings(storage).max_attempts == 3
        assert "Ignoring invalid config value max_attempts" in caplog.text
