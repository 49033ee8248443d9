from sqlalchemy.ext.asyncio import AsyncSession


class BaseService:
    """Base for services bound to a single database session."""

    def __init__(self, db: AsyncSession):
        self.db = db
