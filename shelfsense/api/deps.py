"""
Request-scoped dependencies

The engine and session factory live on app.state (built by the lifespan),
so tests can swap in their own database without touching module globals.
"""
from fastapi import Request
from sqlalchemy.orm import Session


def get_db(request: Request):
    """Get database session"""
    db: Session = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.expire_all()
        db.close()


def get_capabilities(request: Request):
    return getattr(request.app.state, "capabilities", None)


def get_client_factory(request: Request):
    return getattr(request.app.state, "client_factory", None)
