"""Tests for BillingConfig defaults, validation and YAML loading."""

from decimal import Decimal

import pytest

from billing_kernel.config import BillingConfig, load_billing_config


class TestDefaults:
    def test_standard_values(self):
        config = BillingConfig.with_defaults()

        assert config.payment_terms_days == 14
        assert config.default_tax_rate == Decimal("0")
        assert config.max_errors_in_summary == 3
        assert config.integrity_policy == "log"
        assert config.system_actor == "SYSTEM"
        assert config.use_run_lock is True


class TestValidation:
    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"payment_terms_days": -1}, "payment_terms_days"),
            ({"default_tax_rate": Decimal("-1")}, "default_tax_rate"),
            ({"default_tax_rate": Decimal("100.01")}, "exceed"),
            ({"max_errors_in_summary": 0}, "max_errors_in_summary"),
            ({"integrity_policy": "ignore"}, "integrity_policy"),
            ({"system_actor": "  "}, "system_actor"),
            ({"stuck_process_hours": 0}, "stuck_process_hours"),
            ({"process_retention_days": 0}, "process_retention_days"),
        ],
    )
    def test_rejected(self, overrides, message):
        with pytest.raises(ValueError, match=message):
            BillingConfig(**overrides)

    @pytest.mark.parametrize("raw", [19, 19.0, "19", "19.00"])
    def test_tax_rate_coerced_to_decimal(self, raw):
        config = BillingConfig(default_tax_rate=raw)
        assert isinstance(config.default_tax_rate, Decimal)
        assert config.default_tax_rate == Decimal("19")


class TestFromDict:
    def test_known_keys(self):
        config = BillingConfig.from_dict({"payment_terms_days": 30, "integrity_policy": "fail"})
        assert config.payment_terms_days == 30
        assert config.integrity_policy == "fail"

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValueError, match="payment_days"):
            BillingConfig.from_dict({"payment_days": 30})


class TestLoadYaml:
    def test_billing_section(self, tmp_path):
        path = tmp_path / "billing.yaml"
        path.write_text(
            "billing:\n"
            "  payment_terms_days: 30\n"
            "  default_tax_rate: 19.00\n"
            "  use_run_lock: false\n",
            encoding="utf-8",
        )

        config = load_billing_config(path)

        assert config.payment_terms_days == 30
        assert config.default_tax_rate == Decimal("19.0")
        assert config.use_run_lock is False

    def test_top_level_keys(self, tmp_path):
        path = tmp_path / "billing.yaml"
        path.write_text("integrity_policy: fail\n", encoding="utf-8")
        assert load_billing_config(path).integrity_policy == "fail"

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "billing.yaml"
        path.write_text("", encoding="utf-8")
        assert load_billing_config(path) == BillingConfig()

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "billing.yaml"
        path.write_text("- 1\n- 2\n", encoding="utf-8")
        with pytest.raises(ValueError, match="mapping"):
            load_billing_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_billing_config(tmp_path / "absent.yaml")
