from typing import Generic, Type, TypeVar
from uuid import UUID
from pydantic import BaseModel
from sqlalchemy.orm import Session, Query


ModelType = TypeVar("ModelType")
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)


def _as_uuid(value):
    # queue messages carry ids as strings
    return UUID(value) if isinstance(value, str) else value


class BaseService(Generic[ModelType, CreateSchemaType]):
    def __init__(self, model: Type[ModelType]):
        """
        Generic persistence helpers shared by the session and job services.

        **Parameters**

        * `model`: A SQLAlchemy model class keyed by a UUID `id`
        """
        self.model = model

    def create(self, db: Session, *, obj_in: CreateSchemaType) -> ModelType:
        row = self.model(**obj_in.model_dump())
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    def get_all(self, db: Session) -> Query:
        return db.query(self.model)

    def get(self, db: Session, id) -> ModelType | None:
        return db.get(self.model, _as_uuid(id))

    def delete(self, db: Session, *, id) -> None:
        row = self.get(db, id)
        if row is not None:
            db.delete(row)
            db.commit()
