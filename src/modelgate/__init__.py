from .config import GatewayConfig
from .contracts import (
    AttachmentRef,
    InvocationFailure,
    InvocationOutcome,
    InvocationRequest,
    InvocationSuccess,
    Operation,
)
from .errors import (
    AuthError,
    ConfigurationError,
    DispatchError,
    ErrorKind,
    GatewayError,
    QuotaError,
    RoutingError,
    ValidationError,
)
from .identity import IdentityResolver, JwtTokenSigner, Principal, PrincipalKind
from .pipeline import InvocationPipeline

__all__ = [
    "AttachmentRef",
    "AuthError",
    "ConfigurationError",
    "DispatchError",
    "ErrorKind",
    "GatewayConfig",
    "GatewayError",
    "IdentityResolver",
    "InvocationFailure",
    "InvocationOutcome",
    "InvocationPipeline",
    "InvocationRequest",
    "InvocationSuccess",
    "JwtTokenSigner",
    "Operation",
    "Principal",
    "PrincipalKind",
    "QuotaError",
    "RoutingError",
    "ValidationError",
]
