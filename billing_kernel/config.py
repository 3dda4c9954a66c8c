"""
Billing Configuration Schema.

Defines the structure and defaults for billing-run settings.  Values can be
supplied in code, from a dict, or from a YAML file:

    config = load_billing_config(Path("billing.yaml"))

YAML layout (all keys optional)::

    billing:
      payment_terms_days: 14
      default_tax_rate: "19.00"
      integrity_policy: fail
"""

from dataclasses import dataclass, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Self

import yaml

from billing_kernel.logging_config import get_logger

logger = get_logger("config")

INTEGRITY_POLICIES = frozenset({"log", "fail"})


@dataclass
class BillingConfig:
    """
    Configuration schema for the recurring-billing engine.

    ``integrity_policy`` decides what happens when a run's created invoice,
    open-item and processed-schedule counts disagree: ``"log"`` records an
    error in the batch result, ``"fail"`` aborts the whole run.
    """

    # Invoice terms
    payment_terms_days: int = 14
    payment_terms_text: str = "Payable within 14 days without deduction"
    default_tax_rate: Decimal = Decimal("0")

    # Run reporting
    max_errors_in_summary: int = 3
    integrity_policy: str = "log"
    system_actor: str = "SYSTEM"

    # Process record housekeeping
    stuck_process_hours: int = 24
    process_retention_days: int = 365

    # Cross-run exclusion per billing date
    use_run_lock: bool = True

    def __post_init__(self):
        # YAML yields int, float or str here
        if isinstance(self.default_tax_rate, (int, float, str)):
            self.default_tax_rate = Decimal(str(self.default_tax_rate))

        if self.payment_terms_days < 0:
            raise ValueError("payment_terms_days cannot be negative")
        if self.default_tax_rate < 0:
            raise ValueError("default_tax_rate cannot be negative")
        if self.default_tax_rate > Decimal("100"):
            raise ValueError("default_tax_rate cannot exceed 100%")
        if self.max_errors_in_summary < 1:
            raise ValueError("max_errors_in_summary must be at least 1")
        if self.integrity_policy not in INTEGRITY_POLICIES:
            raise ValueError(
                f"integrity_policy must be one of {sorted(INTEGRITY_POLICIES)}, "
                f"got '{self.integrity_policy}'"
            )
        if not self.system_actor or not self.system_actor.strip():
            raise ValueError("system_actor cannot be empty")
        if self.stuck_process_hours <= 0:
            raise ValueError("stuck_process_hours must be positive")
        if self.process_retention_days <= 0:
            raise ValueError("process_retention_days must be positive")

        logger.info(
            "billing_config_initialized",
            extra={
                "payment_terms_days": self.payment_terms_days,
                "default_tax_rate": str(self.default_tax_rate),
                "max_errors_in_summary": self.max_errors_in_summary,
                "integrity_policy": self.integrity_policy,
                "use_run_lock": self.use_run_lock,
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with the standard defaults."""
        logger.info("billing_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create config from a dictionary; unknown keys are rejected."""
        logger.info(
            "billing_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown billing config keys: {unknown}")
        return cls(**data)


def load_billing_config(path: Path) -> BillingConfig:
    """
    Load ``BillingConfig`` from a YAML file.

    The settings may sit at the top level or under a ``billing:`` key.
    An empty file yields the defaults.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: on unknown keys or invalid values.
    """
    with open(path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Billing config {path} must contain a mapping")
    section = data.get("billing", data)
    if not isinstance(section, dict):
        raise ValueError(f"'billing' section in {path} must be a mapping")
    logger.info("billing_config_file_loaded", extra={"path": str(path)})
    return BillingConfig.from_dict(dict(section))
