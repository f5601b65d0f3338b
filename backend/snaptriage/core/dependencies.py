from collections.abc import AsyncIterator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from snaptriage.core.context import TriageContext


def get_context(request: Request) -> TriageContext:
    return request.app.state.context


async def get_session(ctx: TriageContext = Depends(get_context)) -> AsyncIterator[AsyncSession]:
    """FastAPI dependency to provide a database session."""
    async with ctx.session_factory() as session:
        yield session
