from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, SQLModel

from app.domain.errors import PersistenceFailureError
from app.infra.db import get_engine

logger = logging.getLogger(__name__)


class WriteKind(StrEnum):
    SET = "set"
    CREATE_IF_ABSENT = "create_if_absent"
    EXPECT = "expect"
    EXPECT_ABSENT = "expect_absent"
    DELETE = "delete"


def primary_key_of(entity: SQLModel) -> dict[str, Any]:
    mapper = inspect(type(entity))
    return {column.key: getattr(entity, column.key) for column in mapper.primary_key}


@dataclass(frozen=True)
class Write:
    kind: WriteKind
    model: type[SQLModel]
    key: dict[str, Any]
    values: dict[str, Any] = field(default_factory=dict)

    @property
    def target(self) -> str:
        return f"{self.model.__tablename__}/{'/'.join(str(value) for value in self.key.values())}"

    @classmethod
    def set_(cls, model: type[SQLModel], key: dict[str, Any], **values: Any) -> Write:
        return cls(WriteKind.SET, model, key, values)

    @classmethod
    def create_if_absent(cls, entity: SQLModel) -> Write:
        key = primary_key_of(entity)
        values = {name: value for name, value in entity.model_dump().items() if name not in key}
        return cls(WriteKind.CREATE_IF_ABSENT, type(entity), key, values)

    @classmethod
    def expect(cls, model: type[SQLModel], key: dict[str, Any], **values: Any) -> Write:
        return cls(WriteKind.EXPECT, model, key, values)

    @classmethod
    def expect_absent(cls, model: type[SQLModel], key: dict[str, Any]) -> Write:
        return cls(WriteKind.EXPECT_ABSENT, model, key)

    @classmethod
    def delete(cls, model: type[SQLModel], key: dict[str, Any]) -> Write:
        return cls(WriteKind.DELETE, model, key)


class PreconditionFailedError(PersistenceFailureError):
    def __init__(self, message: str, write: Write | None = None) -> None:
        super().__init__(message)
        self.write = write


class TransactionalStore(Protocol):
    def commit(self, writes: Sequence[Write]) -> None: ...


class SqlTransactionalStore:
    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine

    def _session(self) -> Session:
        return Session(self._engine or get_engine(), expire_on_commit=False)

    def _apply(self, session: Session, write: Write, index: int) -> None:
        if write.kind in {WriteKind.EXPECT, WriteKind.EXPECT_ABSENT}:
            current = session.get(write.model, write.key, with_for_update=True)
            if write.kind == WriteKind.EXPECT_ABSENT:
                if current is not None:
                    raise PreconditionFailedError(f"{write.target} already exists", write)
                return
            if current is None:
                raise PreconditionFailedError(f"{write.target} does not exist", write)
            for name, expected in write.values.items():
                actual = getattr(current, name)
                if actual != expected:
                    raise PreconditionFailedError(
                        f"{write.target}.{name} is {actual!r}, expected {expected!r}",
                        write,
                    )
            return

        current = session.get(write.model, write.key)
        if write.kind == WriteKind.DELETE:
            if current is not None:
                session.delete(current)
        elif write.kind == WriteKind.CREATE_IF_ABSENT:
            if current is None:
                session.add(write.model(**write.key, **write.values))
        elif current is None:
            session.add(write.model(**write.key, **write.values))
        else:
            for name, value in write.values.items():
                setattr(current, name, value)
            session.add(current)
        session.flush()

    def commit(self, writes: Sequence[Write]) -> None:
        if not writes:
            return
        with self._session() as session:
            try:
                for index, write in enumerate(writes):
                    self._apply(session, write, index)
                session.commit()
            except PreconditionFailedError:
                session.rollback()
                raise
            except IntegrityError as exc:
                session.rollback()
                raise PreconditionFailedError("conflicting concurrent write") from exc
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error("atomic commit of %d write(s) failed: %s", len(writes), exc)
                raise PersistenceFailureError("store rejected the atomic write") from exc
        logger.debug("committed %d write(s): %s", len(writes), ", ".join(w.target for w in writes))
