from __future__ import annotations


class CRMError(Exception):
    """Base class for CRM domain failures surfaced to callers as-is."""

    code = "crm_error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def details(self) -> dict[str, object] | None:
        return None


class NotFoundError(CRMError):
    code = "not_found"
    status_code = 404


class LeadNotFoundError(NotFoundError):
    code = "lead_not_found"

    def __init__(self, lead_id: object) -> None:
        super().__init__("lead not found")
        self.lead_id = lead_id


class ClientNotFoundError(NotFoundError):
    code = "client_not_found"

    def __init__(self, client_id: object) -> None:
        super().__init__("client not found")
        self.client_id = client_id


class AlreadyConvertedError(CRMError):
    code = "lead_already_converted"
    status_code = 409

    def __init__(self, lead_id: object) -> None:
        super().__init__("lead already converted")
        self.lead_id = lead_id


class MissingOwnerError(CRMError):
    """No owner could be resolved from the request or the lead."""

    code = "missing_owner"
    status_code = 422

    def __init__(self, step: str) -> None:
        super().__init__(
            f"{step.capitalize()} owner not specified. "
            "Please provide an owner_id or ensure the lead has an assigned owner."
        )
        self.step = step

    @property
    def details(self) -> dict[str, object] | None:
        return {"step": self.step}


class PipelineMisconfiguredError(CRMError):
    code = "pipeline_has_no_stages"
    status_code = 422

    def __init__(self, pipeline_id: object) -> None:
        super().__init__("default pipeline has no stages")
        self.pipeline_id = pipeline_id

    @property
    def details(self) -> dict[str, object] | None:
        return {"pipeline_id": str(self.pipeline_id)}


class LeadStateError(CRMError):
    code = "invalid_lead_transition"
    status_code = 422
