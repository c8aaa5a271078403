"""
Authorization decision endpoint used by mesh sidecars.

``POST /v1/authorize`` takes the caller's identity (its peer certificate in
PEM, or the identity fields extracted by the sidecar), the target service
and the request path and port. The answer is the decision of the policy
engine: 200 when allowed, 403 otherwise, with the reason in the body.
"""

import logging
from typing import Any

from aiohttp.web import Application, AppRunner, Request, Response, TCPSite, json_response
from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..errors import ValidationError as IdentityError
from ..models.policy import Identity
from ..services.policy_engine import PolicyDecisionEngine
from ..utils.certificates import identity_from_certificate

logger = logging.getLogger(__name__)


class AuthorizeRequest(BaseModel):
    """Body of an authorization request."""

    model_config = ConfigDict(populate_by_name=True)

    certificate: str | None = Field(None, description="Caller certificate (PEM)")
    identity: Identity | None = None
    target: str = Field(..., min_length=1)
    path: str = "/"
    port: int | None = Field(None, ge=1, le=65535)

    @model_validator(mode="after")
    def check_identity_source(self):
        if self.certificate and self.identity:
            raise ValueError("pass either certificate or identity, not both")
        return self

    def caller_identity(self) -> Identity | None:
        """
        Identity presented by the caller.

        Raises:
            ValidationError: If the certificate carries no workload identity
        """
        if self.certificate:
            return identity_from_certificate(self.certificate)
        return self.identity


class AuthorizationServer:
    """HTTP front end of the policy decision engine."""

    def __init__(
        self, engine: PolicyDecisionEngine, port: int = 9191, host: str = "0.0.0.0"
    ):
        self.engine = engine
        self.port = port
        self.host = host
        self.app = Application()
        self.app.router.add_post("/v1/authorize", self._authorize_handler)
        self.runner: AppRunner | None = None

    async def _authorize_handler(self, request: Request) -> Response:
        try:
            payload: Any = await request.json()
            body = AuthorizeRequest.model_validate(payload)
        except ValueError as e:
            # json and pydantic errors are both ValueErrors
            return json_response({"error": "invalid request", "details": str(e)}, status=400)

        try:
            identity = body.caller_identity()
        except IdentityError as e:
            # An unusable certificate is an invalid identity, not a bad request
            logger.info(f"Rejected caller certificate for {body.target}: {e.message}")
            identity = None

        try:
            decision = await self.engine.authorize_with_timeout(
                identity, body.target, body.path, body.port
            )
        except Exception as e:
            logger.error(f"Authorization of call to {body.target} failed: {e}", exc_info=True)
            return json_response(
                {"allowed": False, "outcome": "error", "reason": "internal error"},
                status=500,
            )

        if decision.outcome == "error":
            return json_response(
                {"allowed": False, "outcome": "error", "reason": "internal error"},
                status=500,
            )
        return json_response(
            decision.model_dump(mode="json"), status=200 if decision.allowed else 403
        )

    async def start(self) -> None:
        self.runner = AppRunner(self.app)
        await self.runner.setup()
        await TCPSite(self.runner, self.host, self.port).start()
        logger.info(f"Authorization endpoint listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
        logger.info("Authorization endpoint stopped")
