"""
Base repository class for data access layer.

Repositories own the queries; sync tasks and the reconciler own the
transaction boundaries and call commit/rollback on the session themselves.

Example:
    class EmployeeRepository(BaseRepository[Employee]):
        def find_by_directory_id(self, directory_id: str) -> Optional[Employee]:
            return self.where_first(Employee.directory_id == directory_id)
"""
from abc import ABC
from typing import TypeVar, Generic, Type, Optional, List, Any
from sqlalchemy.orm import Session

T = TypeVar("T")


class BaseRepository(Generic[T], ABC):
    """
    Base repository class providing common data access methods.

    Attributes:
        model_type: The SQLAlchemy model class this repository manages
        db: The database session
    """

    def __init__(self, model_type: Type[T], db: Session):
        self.model_type = model_type
        self.db = db

    def find_by_id(self, id: str) -> Optional[T]:
        """Find a single record by ID."""
        return self.db.get(self.model_type, id)

    def create(self, **kwargs) -> T:
        """
        Add a new record to the session.

        Returns:
            The created record (not yet committed to database)
        """
        instance = self.model_type(**kwargs)
        self.db.add(instance)
        return instance

    def update_if_exists(self, id: str, **fields: Any) -> bool:
        """
        Update a record by ID without loading it first.

        Returns:
            True if a row was updated, False if no row has that ID
        """
        if not fields:
            return self.exists_where(self.model_type.id == id)
        updated = self.db.query(self.model_type).filter(
            self.model_type.id == id
        ).update(fields, synchronize_session="fetch")
        return updated > 0

    def where(self, *criterion) -> List[T]:
        """Filter records using SQLAlchemy expressions."""
        return self.db.query(self.model_type).filter(*criterion).all()

    def where_first(self, *criterion) -> Optional[T]:
        """First record matching SQLAlchemy expressions, or None."""
        return self.db.query(self.model_type).filter(*criterion).first()

    def exists_where(self, *criterion) -> bool:
        """Check if any record matching the criterion exists."""
        return bool(self.db.query(
            self.db.query(self.model_type).filter(*criterion).exists()
        ).scalar())
