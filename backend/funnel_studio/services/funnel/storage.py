"""
Funnel Storage

Persistence gateway for funnels, steps, images and jobs on top of SQLModel.

Single-entity reads and writes open their own session. Writes that must
become visible together (a stage transition and its image set) go through
``unit_of_work()``, which commits once on exit and rolls back otherwise.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from funnel_studio.models.funnel import Funnel, FunnelImage, FunnelJob, FunnelStep, utc_now
from funnel_studio.services.funnel.errors import ConcurrencyError, PersistenceError

logger = logging.getLogger(__name__)


@contextmanager
def _storage_errors(action: str):
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Funnel storage failed to %s", action)
        raise PersistenceError(str(exc)) from exc


class FunnelUnitOfWork:
    """Writes staged on one session; committed together by FunnelStorage."""

    def __init__(self, session: Session):
        self.session = session

    def save(self, *entities: SQLModel) -> None:
        for entity in entities:
            self.session.merge(entity)

    def touch_funnel(self, funnel: Funnel, when: Optional[datetime] = None) -> None:
        """Refresh updated_at without rewriting the rest of the funnel row."""
        when = when or utc_now()
        self.session.execute(
            update(Funnel).where(Funnel.id == funnel.id).values(updated_at=when)
        )
        funnel.updated_at = when

    def append_step(self, funnel: Funnel, step: FunnelStep, expected_revision: int) -> None:
        """
        Persist a new step and advance the funnel to it.

        The funnel row is only advanced when its revision still matches the one
        the caller read; otherwise another advance won and ConcurrencyError is
        raised before anything is committed.
        """
        new_revision = expected_revision + 1
        result = self.session.execute(
            update(Funnel)
            .where(Funnel.id == funnel.id)
            .where(Funnel.revision == expected_revision)
            .values(
                current_step_index=step.step_index,
                revision=new_revision,
                updated_at=step.created_at,
            )
        )
        if result.rowcount != 1:
            raise ConcurrencyError(
                f"Funnel {funnel.id} was modified concurrently (expected revision {expected_revision})"
            )

        self.session.merge(step)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise ConcurrencyError(
                f"Step index {step.step_index} already exists for funnel {funnel.id}"
            ) from exc

        funnel.current_step_index = step.step_index
        funnel.revision = new_revision
        funnel.updated_at = step.created_at


class FunnelStorage:
    def __init__(self, engine: Engine):
        self.engine = engine

    def _session(self) -> Session:
        # Entities outlive their session; keep loaded attributes after commit.
        return Session(self.engine, expire_on_commit=False)

    @contextmanager
    def unit_of_work(self, action: str = "write funnel data") -> Iterator[FunnelUnitOfWork]:
        with _storage_errors(action):
            with self._session() as session:
                yield FunnelUnitOfWork(session)
                session.commit()

    # Funnels

    def save_funnel(self, funnel: Funnel) -> None:
        with self.unit_of_work("save funnel") as uow:
            uow.save(funnel)

    def load_funnel(self, funnel_id: str) -> Optional[Funnel]:
        with _storage_errors("load funnel"), self._session() as session:
            return session.get(Funnel, funnel_id)

    def list_funnels(self) -> List[Funnel]:
        with _storage_errors("list funnels"), self._session() as session:
            return list(session.exec(select(Funnel).order_by(Funnel.updated_at.desc())).all())

    def delete_funnel(self, funnel_id: str) -> None:
        """Remove a funnel with every step, image and job in one transaction."""
        with self.unit_of_work("delete funnel") as uow:
            uow.session.execute(delete(FunnelJob).where(FunnelJob.funnel_id == funnel_id))
            uow.session.execute(delete(FunnelImage).where(FunnelImage.funnel_id == funnel_id))
            uow.session.execute(delete(FunnelStep).where(FunnelStep.funnel_id == funnel_id))
            uow.session.execute(delete(Funnel).where(Funnel.id == funnel_id))

    # Steps

    def save_step(self, step: FunnelStep) -> None:
        with self.unit_of_work("save step") as uow:
            uow.save(step)

    def load_step(self, funnel_id: str, step_id: str) -> Optional[FunnelStep]:
        with _storage_errors("load step"), self._session() as session:
            step = session.get(FunnelStep, step_id)
            if step is None or step.funnel_id != funnel_id:
                return None
            return step

    def load_steps(self, funnel_id: str) -> List[FunnelStep]:
        with _storage_errors("load steps"), self._session() as session:
            stmt = (
                select(FunnelStep)
                .where(FunnelStep.funnel_id == funnel_id)
                .order_by(FunnelStep.step_index)
            )
            return list(session.exec(stmt).all())

    # Images

    def save_image(self, image: FunnelImage) -> None:
        with self.unit_of_work("save image") as uow:
            uow.save(image)

    def load_image(self, funnel_id: str, image_id: str) -> Optional[FunnelImage]:
        with _storage_errors("load image"), self._session() as session:
            image = session.get(FunnelImage, image_id)
            if image is None or image.funnel_id != funnel_id:
                return None
            return image

    def load_images(self, funnel_id: str, step_id: Optional[str] = None) -> List[FunnelImage]:
        with _storage_errors("load images"), self._session() as session:
            stmt = select(FunnelImage).where(FunnelImage.funnel_id == funnel_id)
            if step_id is not None:
                stmt = stmt.where(FunnelImage.step_id == step_id)
            stmt = stmt.order_by(FunnelImage.generated_at, FunnelImage.id)
            return list(session.exec(stmt).all())

    # Jobs

    def save_job(self, job: FunnelJob) -> None:
        with self.unit_of_work("save job") as uow:
            uow.save(job)

    def load_jobs(self, funnel_id: str, step_id: Optional[str] = None) -> List[FunnelJob]:
        with _storage_errors("load jobs"), self._session() as session:
            stmt = select(FunnelJob).where(FunnelJob.funnel_id == funnel_id)
            if step_id is not None:
                stmt = stmt.where(FunnelJob.step_id == step_id)
            stmt = stmt.order_by(FunnelJob.created_at, FunnelJob.id)
            return list(session.exec(stmt).all())
