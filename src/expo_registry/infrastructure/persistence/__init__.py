"""SQLAlchemy persistence layer."""
from __future__ import annotations

from .models import Base, ExhibitionModel, GlobalVisitorModel, RegistrationCounterModel, RegistrationModel
from .session import make_engine, make_session_factory, session_scope

__all__ = [
    "Base",
    "ExhibitionModel",
    "GlobalVisitorModel",
    "RegistrationCounterModel",
    "RegistrationModel",
    "make_engine",
    "make_session_factory",
    "session_scope",
]
