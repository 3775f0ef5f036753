"""Model run repository."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from lens.models.run import ModelRun


class RunRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> ModelRun:
        run = ModelRun(**kwargs)
        self.session.add(run)
        await self.session.commit()
        await self.session.refresh(run)
        return run

    async def get_by_id(self, id: str) -> ModelRun | None:
        result = await self.session.execute(select(ModelRun).where(ModelRun.id == id))
        return result.scalar_one_or_none()

    async def get_last_run(self, model_name: str, status: str | None = None) -> ModelRun | None:
        query = select(ModelRun).where(ModelRun.model_name == model_name)
        if status:
            query = query.where(ModelRun.status == status)
        result = await self.session.execute(
            query.order_by(ModelRun.created_at.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def list_by_model(self, model_name: str, limit: int = 10) -> list[ModelRun]:
        result = await self.session.execute(
            select(ModelRun)
            .where(ModelRun.model_name == model_name)
            .order_by(ModelRun.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_by_run(self, run_id: str) -> list[ModelRun]:
        result = await self.session.execute(
            select(ModelRun)
            .where(ModelRun.run_id == run_id)
            .order_by(ModelRun.created_at)
        )
        return list(result.scalars().all())

    async def list_errors(self, limit: int = 20) -> list[ModelRun]:
        result = await self.session.execute(
            select(ModelRun)
            .where(ModelRun.status == "failed")
            .order_by(ModelRun.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
