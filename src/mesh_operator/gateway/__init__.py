"""
Network front ends of the control plane.

- ingress.py: the external entry point served by the traffic router
- authz.py: the authorization decision endpoint queried by sidecars
"""

from .authz import AuthorizationServer, AuthorizeRequest
from .ingress import IngressGateway, ServerContexts

__all__ = [
    "AuthorizationServer",
    "AuthorizeRequest",
    "IngressGateway",
    "ServerContexts",
]
