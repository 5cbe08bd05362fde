import uuid
from datetime import date
from decimal import Decimal

import pytest

from app.models.domain_settings import SettingDomain
from app.services import settings_spec
from app.services.collections.config import load_collections_config, retry_offsets, tenant_ids
from app.services.numbering import next_batch_number, next_charge_number


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("2,4", (0, 2, 4)),
        ("[4, 2, 2]", (0, 2, 4)),
        ([3, "x", -1], (0, 3)),
        (None, (0,)),
        ("", (0,)),
    ],
)
def test_retry_offsets_always_include_anchor(raw, expected):
    assert retry_offsets(raw) == expected


def test_tenant_ids_drop_invalid_entries():
    tenant = uuid.uuid4()

    assert tenant_ids(f"{tenant}, not-a-uuid") == frozenset({tenant})
    assert tenant_ids([str(tenant), 7]) == frozenset({tenant})
    assert tenant_ids(None) == frozenset()


def test_collections_config_defaults(db_session):
    config = load_collections_config(db_session)

    assert config.timezone == "America/Argentina/Buenos_Aires"
    assert config.anchor_day == 8
    assert config.retry_offsets == (0, 2, 4)
    assert config.attempts_per_charge == 3
    assert config.direct_debit_discount_pct == Decimal("10")
    assert config.default_vat_rate == Decimal("0.21")
    assert config.pd_adapter == "debug_csv"
    assert config.fiscal_mode == "mock"
    assert config.jobs_enabled is False


def test_collections_config_reads_db_then_env(db_session, collections_setting, monkeypatch):
    monkeypatch.setenv("BILLING_ANCHOR_DAY", "15")
    assert load_collections_config(db_session).anchor_day == 15

    collections_setting("anchor_day", 20)
    collections_setting("holidays", ["2026-03-23"])
    collections_setting("pd_entity", "0456")
    config = load_collections_config(db_session)

    assert config.anchor_day == 20
    assert config.holidays == frozenset({date(2026, 3, 23)})
    assert config.adapter_options()["entity"] == "0456"


def test_invalid_setting_values_fall_back_to_default(db_session, collections_setting):
    collections_setting("anchor_day", 45)
    collections_setting("pd_adapter", "unknown_bank")

    config = load_collections_config(db_session)

    assert config.anchor_day == 8
    assert config.pd_adapter == "debug_csv"


def test_set_value_rejects_unknown_keys(db_session):
    with pytest.raises(KeyError):
        settings_spec.set_value(db_session, SettingDomain.collections, "nope", "1")


def test_charge_numbers_are_per_tenant(db_session):
    tenant_a = uuid.uuid4()
    tenant_b = uuid.uuid4()

    assert [next_charge_number(db_session, tenant_a) for _ in range(3)] == [1, 2, 3]
    assert next_charge_number(db_session, tenant_b) == 1
    assert next_batch_number(db_session) == 1
    assert next_batch_number(db_session) == 2


def test_presentment_cutoff_settings(db_session, collections_setting, monkeypatch):
    config = load_collections_config(db_session)
    assert config.pd_cutoff_hour is None
    assert config.pd_disabled_tenants == frozenset()

    tenant = uuid.uuid4()
    monkeypatch.setenv("BILLING_PD_CUTOFF_HOUR", "30")
    monkeypatch.setenv("BILLING_PD_DISABLED_TENANTS", str(tenant))
    config = load_collections_config(db_session)
    assert config.pd_cutoff_hour is None
    assert config.pd_disabled_tenants == frozenset({tenant})

    collections_setting("pd_cutoff_hour", 15)
    assert load_collections_config(db_session).pd_cutoff_hour == 15
