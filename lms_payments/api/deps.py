import secrets

from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from lms_payments.config import Settings, get_settings
from lms_payments.db.session import SessionLocal
from lms_payments.gateways.registry import GatewayRegistry

basic_auth = HTTPBasic()


async def get_db():
    async with SessionLocal() as db:
        yield db


def settings_dependency() -> Settings:
    return get_settings()


def get_gateways(request: Request) -> GatewayRegistry:
    return request.app.state.gateways


def current_student(x_student_id: str = Header(..., alias="X-Student-Id")) -> str:
    """Student identity as asserted by the authenticating front proxy."""
    student_id = x_student_id.strip()
    if not student_id:
        raise HTTPException(status_code=401, detail="Missing student identity")
    return student_id


def require_operator(
    credentials: HTTPBasicCredentials = Depends(basic_auth),
    settings: Settings = Depends(settings_dependency),
) -> str:
    expected = settings.operators.get(credentials.username)
    # Compare against a dummy token for unknown names so timing stays flat
    token_ok = secrets.compare_digest(
        credentials.password.encode("utf-8"),
        (expected or secrets.token_hex(16)).encode("utf-8"),
    )
    if expected is None or not token_ok:
        raise HTTPException(
            status_code=401,
            detail="Invalid operator credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username
