"""
Domain exceptions raised by the service layer.

The API layer maps them onto HTTP status codes in `ouvidoria.main`.
Authorization denial and not-found are deliberately distinct; callers decide
whether to mask a denial as a 404.
"""


class OuvidoriaError(Exception):
    """Base class for domain errors."""


class NotFoundError(OuvidoriaError):
    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class AccessDeniedError(OuvidoriaError):
    pass


class InvalidTransitionError(OuvidoriaError):
    pass


class ProtocolExhaustedError(OuvidoriaError):
    """No unique protocol found within the allowed attempts. The caller should retry the intake."""


class DuplicateDeliveryError(OuvidoriaError):
    """A provider message id was stored concurrently by another delivery."""

    def __init__(self, external_message_id: str):
        self.external_message_id = external_message_id
        super().__init__(f"Provider message {external_message_id} already ingested")
