from pipecd_api.platform.security.client import ClientFactory, ScopedClient
from pipecd_api.platform.security.context import Identity, RequestContext
from pipecd_api.platform.security.errors import (
    ConflictError,
    CrmError,
    ErrorKind,
    FieldViolation,
    ForbiddenError,
    InputValidationError,
    InternalError,
    NotFoundError,
    StoreError,
    StoreFailure,
    UnauthenticatedError,
)
from pipecd_api.platform.security.permissions import (
    Capability,
    DbPermissionResolver,
    PermissionResolver,
    StaticPermissionResolver,
    authorize,
    has_capability,
)

__all__ = [
    "Capability",
    "ClientFactory",
    "ConflictError",
    "CrmError",
    "DbPermissionResolver",
    "ErrorKind",
    "FieldViolation",
    "ForbiddenError",
    "Identity",
    "InputValidationError",
    "InternalError",
    "NotFoundError",
    "PermissionResolver",
    "RequestContext",
    "ScopedClient",
    "StaticPermissionResolver",
    "StoreError",
    "StoreFailure",
    "UnauthenticatedError",
    "authorize",
    "has_capability",
]
