"""
Employee Repository for directory identity records.

Usage:
    repo = EmployeeRepository(db)
    employee = repo.find_by_directory_id("0f3c...")
"""
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from app.models import Employee
from app.repositories.base import BaseRepository


class EmployeeRepository(BaseRepository[Employee]):
    """Repository for employee data access."""

    def __init__(self, db):
        """Initialize the employee repository."""
        super().__init__(Employee, db)

    def find_by_directory_id(self, directory_id: str) -> Optional[Employee]:
        """Find an employee by the directory's immutable object id."""
        return self.where_first(Employee.directory_id == directory_id)

    def upsert_from_directory(self, directory_id: str, fields: Dict[str, Any]) -> Tuple[Employee, bool]:
        """
        Create or update an employee keyed by directory id and commit.

        A concurrent insert of the same directory id is resolved by retrying
        as an update against the row that won.

        Args:
            directory_id: Directory object id
            fields: Column values to write

        Returns:
            Tuple of (employee, created)
        """
        employee = self.find_by_directory_id(directory_id)
        if employee is not None:
            for key, value in fields.items():
                setattr(employee, key, value)
            self.db.commit()
            return employee, False

        employee = Employee(directory_id=directory_id, **fields)
        self.db.add(employee)
        try:
            self.db.commit()
            return employee, True
        except IntegrityError:
            self.db.rollback()
            employee = self.find_by_directory_id(directory_id)
            if employee is None:
                raise
            for key, value in fields.items():
                setattr(employee, key, value)
            self.db.commit()
            return employee, False
