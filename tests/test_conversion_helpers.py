from __future__ import annotations

import uuid
from decimal import Decimal

import pytest
from pydantic import ValidationError

from pmo.crm.conversion import (
    DEFAULT_PIPELINE_STAGES,
    LEAD_SOURCE_TO_CRM,
    ConversionContext,
    LeadSnapshot,
    compute_weighted_amount,
    map_lead_source,
    normalize_conversion_request,
    select_initial_stage,
)
from pmo.crm.models import CRMPipelineStage, LeadSource
from pmo.crm.schemas import LeadConvertRequest


def _snapshot(**overrides: object) -> LeadSnapshot:
    values: dict[str, object] = {
        "id": uuid.uuid4(),
        "tenant_id": "tenant-a",
        "email": "jamie@acme.test",
        "name": "Jamie",
        "company": "Acme",
        "service_interest": "consulting",
        "source": "WEBSITE",
        "status": "NEW",
        "owner_user_id": None,
        "client_id": None,
        "primary_contact_id": None,
        "row_version": 1,
    }
    values.update(overrides)
    return LeadSnapshot(**values)  # type: ignore[arg-type]


def test_lead_source_mapping_covers_every_source() -> None:
    assert set(LEAD_SOURCE_TO_CRM) == LeadSource.ALL
    assert map_lead_source("LINKEDIN") == "SOCIAL_MEDIA"
    assert map_lead_source("WEBSITE_CONTACT") == "WEBSITE"
    assert map_lead_source(None) is None


def test_weighted_amount_is_null_when_either_side_missing() -> None:
    assert compute_weighted_amount(Decimal("1000"), 30) == Decimal("300")
    assert compute_weighted_amount(Decimal("0"), 30) == Decimal("0")
    assert compute_weighted_amount(None, 30) is None
    assert compute_weighted_amount(Decimal("1000"), None) is None


def test_select_initial_stage_prefers_first_open_stage() -> None:
    stages = [
        CRMPipelineStage(name="Won", position=1, probability=100, stage_type="WON"),
        CRMPipelineStage(name="Later", position=3, probability=50, stage_type="OPEN"),
        CRMPipelineStage(name="Sooner", position=2, probability=20, stage_type="OPEN"),
    ]

    assert select_initial_stage(stages).name == "Sooner"


def test_select_initial_stage_falls_back_to_first_stage() -> None:
    stages = [
        CRMPipelineStage(name="Lost", position=2, probability=0, stage_type="LOST"),
        CRMPipelineStage(name="Won", position=1, probability=100, stage_type="WON"),
    ]

    assert select_initial_stage(stages).name == "Won"
    assert select_initial_stage([]) is None


def test_default_stages_are_ordered_with_fixed_probabilities() -> None:
    assert [(stage.name, stage.probability) for stage in DEFAULT_PIPELINE_STAGES] == [
        ("New Lead", 10),
        ("Qualified", 30),
        ("Proposal", 50),
        ("Negotiation", 75),
        ("Closed Won", 100),
        ("Closed Lost", 0),
    ]
    assert [stage.position for stage in DEFAULT_PIPELINE_STAGES] == [1, 2, 3, 4, 5, 6]


def test_normalize_folds_legacy_fields() -> None:
    plan = normalize_conversion_request(LeadConvertRequest(pipeline_stage="Proposal", pipeline_value=Decimal("250")))

    assert plan.create_opportunity is True
    assert plan.opportunity_amount == Decimal("250")


def test_normalize_treats_zero_legacy_value_as_supplied() -> None:
    plan = normalize_conversion_request(LeadConvertRequest(pipeline_value=Decimal("0")))

    assert plan.create_opportunity is True
    assert plan.opportunity_amount == Decimal("0")


def test_normalize_defaults_to_doing_nothing() -> None:
    plan = normalize_conversion_request(LeadConvertRequest())

    assert plan.create_client is False
    assert plan.create_contact is False
    assert plan.create_project is False
    assert plan.create_opportunity is False
    assert plan.opportunity_amount is None


def test_convert_request_rejects_out_of_range_probability() -> None:
    with pytest.raises(ValidationError):
        LeadConvertRequest(opportunity_probability=101)
    with pytest.raises(ValidationError):
        LeadConvertRequest(opportunity_amount=Decimal("-1"))


def test_default_deal_name_uses_company_or_email() -> None:
    assert _snapshot().default_deal_name() == "Acme - consulting"
    assert _snapshot(company=None).default_deal_name() == "jamie@acme.test - consulting"
    assert _snapshot(service_interest=None).default_deal_name() == "Acme"


def test_context_owner_prefers_request_owner() -> None:
    lead_owner = uuid.uuid4()
    request_owner = uuid.uuid4()
    lead = _snapshot(owner_user_id=lead_owner)

    with_request_owner = ConversionContext(
        lead=lead,
        plan=normalize_conversion_request(LeadConvertRequest(owner_id=request_owner)),
        tenant_id="tenant-a",
    )
    without_request_owner = ConversionContext(
        lead=lead,
        plan=normalize_conversion_request(LeadConvertRequest()),
        tenant_id="tenant-a",
    )

    assert with_request_owner.resolve_owner_id() == request_owner
    assert without_request_owner.resolve_owner_id() == lead_owner
    assert without_request_owner.produced_ids() == {
        "client_id": None,
        "contact_id": None,
        "project_id": None,
        "account_id": None,
        "opportunity_id": None,
    }
