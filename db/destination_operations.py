"""
Database operations for upload destinations.

Provides DestinationRepository class with methods for:
- Registering destinations and their connection details
- Resolving the active destinations for a classification
- Enabling, disabling and editing destinations
"""

import logging
from typing import Any

from sqlalchemy import select

from db.models import Classification, Destination
from db.operations import BaseRepository

logger = logging.getLogger(__name__)


class DestinationRepository(BaseRepository):
    """Repository for Destination database operations."""

    # ────────────────────────────────────────────────────────────────────────────
    # Create Operations
    # ────────────────────────────────────────────────────────────────────────────

    def create(
        self,
        name: str,
        type: str,
        supported_classifications: list[str],
        connection: dict[str, Any] | None = None,
        settings: dict[str, Any] | None = None,
        active: bool = True,
    ) -> Destination:
        """
        Create a new destination.

        Args:
            name: Unique display name.
            type: Uploader type key (ftp, sftp, api, shutterstock, ...).
            supported_classifications: Classification values accepted.
            connection: Protocol-specific connection details.
            settings: Extra uploader settings.
            active: Whether the destination receives uploads.

        Returns:
            Created Destination instance.

        Raises:
            ValueError: If a classification value is unknown.
        """
        valid = {c.value for c in Classification}
        unknown = set(supported_classifications) - valid
        if unknown:
            raise ValueError(f"Unknown classification(s): {', '.join(sorted(unknown))}")

        destination = Destination(
            name=name,
            type=type,
            supported_classifications=list(supported_classifications),
            connection=dict(connection or {}),
            settings=dict(settings or {}),
            active=active,
        )

        with self._scope() as session:
            session.add(destination)
            session.flush()

        logger.info(f"Created destination: {destination}")
        return destination

    # ────────────────────────────────────────────────────────────────────────────
    # Read Operations
    # ────────────────────────────────────────────────────────────────────────────

    def get_by_id(self, destination_id: int) -> Destination | None:
        """Get destination by ID."""
        with self._scope() as session:
            return session.get(Destination, destination_id)

    def get_by_name(self, name: str) -> Destination | None:
        """Get destination by its unique name."""
        with self._scope() as session:
            return session.execute(
                select(Destination).where(Destination.name == name)
            ).scalar_one_or_none()

    def get_all(self, active_only: bool = False) -> list[Destination]:
        """
        Get all destinations in id order.

        Args:
            active_only: Only return active destinations.

        Returns:
            List of Destination instances.
        """
        stmt = select(Destination).order_by(Destination.id)
        if active_only:
            stmt = stmt.where(Destination.active.is_(True))

        with self._scope() as session:
            return list(session.execute(stmt).scalars().all())

    def get_active_for(self, classification: Classification | str) -> list[Destination]:
        """
        Get active destinations that accept a classification.

        The order is stable (by id) so uploads try destinations in the
        same order every time.

        Args:
            classification: Batch classification.

        Returns:
            List of matching Destination instances.
        """
        return [
            destination
            for destination in self.get_all(active_only=True)
            if destination.supports(classification)
        ]

    # ────────────────────────────────────────────────────────────────────────────
    # Update Operations
    # ────────────────────────────────────────────────────────────────────────────

    def update(self, destination_id: int, **kwargs) -> Destination | None:
        """
        Update destination fields.

        Args:
            destination_id: Primary key of the destination.
            **kwargs: Fields to update.

        Returns:
            Updated Destination instance or None if not found.
        """
        with self._scope() as session:
            destination = session.get(Destination, destination_id)
            if not destination:
                return None

            for key, value in kwargs.items():
                if hasattr(destination, key):
                    setattr(destination, key, value)
            session.flush()
            return destination

    def set_active(self, destination_id: int, active: bool) -> Destination | None:
        """Enable or disable a destination."""
        destination = self.update(destination_id, active=active)
        if destination:
            logger.info(f"Destination {destination.name} {'enabled' if active else 'disabled'}")
        return destination

    # ────────────────────────────────────────────────────────────────────────────
    # Delete Operations
    # ────────────────────────────────────────────────────────────────────────────

    def delete(self, destination_id: int) -> bool:
        """
        Delete a destination.

        Args:
            destination_id: Primary key of the destination.

        Returns:
            True if deleted, False if not found.
        """
        with self._scope() as session:
            destination = session.get(Destination, destination_id)
            if destination:
                session.delete(destination)
                return True
            return False
