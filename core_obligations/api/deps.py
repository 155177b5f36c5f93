"""
Request dependencies
"""

from fastapi import Request

from ..engine import ObligationEngine


def get_engine(request: Request) -> ObligationEngine:
    """Engine attached to the application by create_app()"""
    return request.app.state.engine
