from typing import Any, Dict, Optional


class AppError(Exception):
    # Base class for domain errors (intended, meaningful failures).
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "detail": self.message}


class InvalidOwnership(AppError):
    # A Variable must be owned by exactly one of lever or parent.
    status_code = 400


class ValidationFailed(AppError):
    status_code = 400


class NotFound(AppError):
    status_code = 404

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class CircularReference(AppError):
    status_code = 409


class InactiveAncestor(AppError):
    status_code = 409


class DuplicateName(AppError):
    status_code = 409


class DependentRecordsExist(AppError):
    status_code = 409


class DestructiveOperationPending(AppError):
    # Raised after a non-forced delete of a non-empty variable; carries the preview.
    status_code = 409

    def __init__(self, message: str, preview: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.preview = preview or {}

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["preview"] = self.preview
        return data


class ConcurrentModification(AppError):
    status_code = 409


class SubmissionRejected(AppError):
    status_code = 400


class TreeDepthExceeded(AppError):
    status_code = 422


class PartialMutationFailure(AppError):
    # A multi-node mutation failed; the transaction was rolled back.
    status_code = 500
