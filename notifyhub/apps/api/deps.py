from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel

from notifyhub.core.secrets import ADMIN_OVERRIDE_TOKEN, service_secret_name
from notifyhub.services.idempotency import IDEMPOTENCY_HEADER
from notifyhub.services.runtime import Runtime


class ServiceCaller(BaseModel):
    # Authenticated upstream service; its origin scopes service buckets and budgets.
    service_origin: str


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def idempotency_key_header(
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> str | None:
    # Expose Idempotency-Key in OpenAPI; the body field wins when both are present.
    return idempotency_key


def tenant_header(
    tenant_id: str | None = Header(default=None, alias="X-Tenant-Id"),
) -> str | None:
    return tenant_id


def require_tenant(tenant_id: str | None = Depends(tenant_header)) -> str:
    if not tenant_id or not tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "TENANT_REQUIRED", "message": "X-Tenant-Id header is required"},
        )
    return tenant_id.strip()


def require_service(
    runtime: Runtime = Depends(get_runtime),
    service_origin: str | None = Header(default=None, alias="X-Service-Origin"),
    service_secret: str | None = Header(default=None, alias="X-Service-Secret"),
) -> ServiceCaller:
    if not service_origin:
        raise _auth_error("X-Service-Origin header is required")
    if not runtime.settings.service_auth_enabled:
        return ServiceCaller(service_origin=service_origin)
    expected = runtime.secrets.get_secret(service_secret_name(service_origin))
    # Compare in constant time; unknown origins fail the same way as bad secrets.
    if not expected or not service_secret or not hmac.compare_digest(
        expected.encode("utf-8"), service_secret.encode("utf-8")
    ):
        raise _auth_error("Invalid service credentials")
    return ServiceCaller(service_origin=service_origin)


def ensure_origin(caller: ServiceCaller, service_origin: str | None) -> str:
    # Callers may only send on behalf of their own origin.
    if service_origin and service_origin != caller.service_origin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "service_origin does not match the authenticated caller"},
        )
    return caller.service_origin


def admin_credential(authorization: str | None = Header(default=None, alias="Authorization")) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Admin bearer credential is required"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return authorization.split(" ", 1)[1].strip()


def require_admin(
    runtime: Runtime = Depends(get_runtime),
    credential: str = Depends(admin_credential),
) -> str:
    expected = runtime.secrets.get_secret(ADMIN_OVERRIDE_TOKEN)
    if not expected or not hmac.compare_digest(expected.encode("utf-8"), credential.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Admin credential is not valid"},
        )
    return credential
