from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from agent_jobs.db.session import get_db_session

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
