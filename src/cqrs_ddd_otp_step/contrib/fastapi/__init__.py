"""FastAPI integration for cqrs-ddd-otp-step."""

from .router import SESSION_PARAM, create_otp_step_router

__all__: list[str] = [
    "SESSION_PARAM",
    "create_otp_step_router",
]
