"""DeploymentStore — persistence for Deployment records."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

from core.errors import ConflictError, NotFoundError
from deployments.models import (
    Deployment,
    DeploymentCreate,
    DeploymentFilter,
    DeploymentUpdate,
    content_version,
)
from store.cursor_store import schedule_cursors
from store.database import Database, UTCDateTime, metadata

logger = logging.getLogger(__name__)

# ── Schema ───────────────────────────────────────────────────────────────────

_deployments = sa.Table(
    "deployments",
    metadata,
    sa.Column("id",             sa.String,  primary_key=True),
    sa.Column("flow_id",        sa.String,  nullable=False),
    sa.Column("name",           sa.String,  nullable=False),
    sa.Column("revision",       sa.Integer, nullable=False),
    sa.Column("paused",         sa.Boolean, nullable=False, index=True),
    sa.Column("work_pool_name", sa.String,  nullable=True, index=True),
    sa.Column("data",           sa.Text,    nullable=False),   # full Pydantic JSON
    sa.Column("created_at",     UTCDateTime, nullable=False),
    sa.Column("updated_at",     UTCDateTime, nullable=False),
    sa.UniqueConstraint("flow_id", "name", name="uq_deployments_flow_name"),
)

_MAX_UPDATE_ATTEMPTS = 5


def _row(deployment: Deployment) -> dict:
    return {
        "id":             deployment.id,
        "flow_id":        deployment.flow_id,
        "name":           deployment.name,
        "revision":       deployment.revision,
        "paused":         deployment.paused,
        "work_pool_name": deployment.work_pool_name,
        "data":           deployment.model_dump_json(),
        "created_at":     deployment.created_at,
        "updated_at":     deployment.updated_at,
    }


# ── Store ────────────────────────────────────────────────────────────────────

class DeploymentStore:
    """Create, read, update and list deployments.

    Reads never write. Updates are optimistic: the row is replaced only if its
    revision is still the one the update was computed from.
    """

    def __init__(self, db: Database):
        self.db = db

    # ── Writes ───────────────────────────────────────────────────────────────

    async def create(self, spec: DeploymentCreate) -> Deployment:
        """Insert a deployment. Raises ConflictError if (flow_id, name) exists."""
        deployment = Deployment(**spec.model_dump())
        if deployment.version is None:
            deployment.version = content_version(deployment)

        async def insert(conn):
            await conn.execute(sa.insert(_deployments).values(**_row(deployment)))

        try:
            await self.db.transaction(insert)
        except IntegrityError as e:
            raise ConflictError(
                f"Deployment '{spec.name}' already exists for flow '{spec.flow_id}'",
                flow_id=spec.flow_id, name=spec.name,
            ) from e
        logger.info(
            "Deployment created",
            extra={"deployment_id": deployment.id, "flow_id": deployment.flow_id,
                   "deployment": deployment.name},
        )
        return deployment

    async def update(
        self,
        deployment_id: str,
        changes: DeploymentUpdate | dict[str, Any],
    ) -> Deployment:
        """Replace the supplied fields atomically and bump the revision.

        Raises NotFoundError if the deployment is missing, ConflictError if
        concurrent writers kept winning the revision check.
        """
        if isinstance(changes, dict):
            changes = DeploymentUpdate.model_validate(changes)
        partial = changes.model_dump(exclude_unset=True)

        for _ in range(_MAX_UPDATE_ATTEMPTS):
            current = await self.get(deployment_id)
            updated = self._apply(current, partial)

            async def write(conn, seen=current.revision, new=updated):
                row = _row(new)
                del row["id"], row["flow_id"], row["name"], row["created_at"]
                result = await conn.execute(
                    sa.update(_deployments)
                    .where(_deployments.c.id == deployment_id)
                    .where(_deployments.c.revision == seen)
                    .values(**row)
                )
                return result.rowcount

            if await self.db.transaction(write) == 1:
                logger.info(
                    "Deployment updated",
                    extra={"deployment_id": deployment_id, "revision": updated.revision,
                           "fields": sorted(partial)},
                )
                return updated
            logger.debug("Deployment revision moved, retrying update",
                         extra={"deployment_id": deployment_id})

        raise ConflictError(
            f"Deployment '{deployment_id}' was modified concurrently",
            deployment_id=deployment_id,
        )

    async def upsert(self, spec: DeploymentCreate) -> Deployment:
        """Create the deployment, or update the one with the same (flow_id, name)."""
        try:
            return await self.create(spec)
        except ConflictError:
            existing = await self.get_by_name(spec.flow_id, spec.name)
        changes = spec.model_dump(exclude={"flow_id", "name"}, exclude_unset=True)
        return await self.update(existing.id, changes)

    async def set_paused(self, deployment_id: str, paused: bool) -> Deployment:
        return await self.update(deployment_id, {"paused": paused})

    async def delete(self, deployment_id: str) -> None:
        """Remove a deployment and its schedule cursors."""
        async def remove(conn):
            result = await conn.execute(
                sa.delete(_deployments).where(_deployments.c.id == deployment_id)
            )
            await conn.execute(
                sa.delete(schedule_cursors)
                .where(schedule_cursors.c.deployment_id == deployment_id)
            )
            return result.rowcount

        if not await self.db.transaction(remove):
            raise NotFoundError(f"Deployment '{deployment_id}' not found")
        logger.info("Deployment deleted", extra={"deployment_id": deployment_id})

    # ── Reads ────────────────────────────────────────────────────────────────

    async def get(self, deployment_id: str) -> Deployment:
        """Load a deployment by ID. Raises NotFoundError if absent."""
        async def select(conn):
            return (await conn.execute(
                sa.select(_deployments.c.data).where(_deployments.c.id == deployment_id)
            )).fetchone()

        row = await self.db.read(select)
        if row is None:
            raise NotFoundError(f"Deployment '{deployment_id}' not found")
        return Deployment.model_validate_json(row.data)

    async def get_by_name(self, flow_id: str, name: str) -> Deployment:
        async def select(conn):
            return (await conn.execute(
                sa.select(_deployments.c.data)
                .where(_deployments.c.flow_id == flow_id)
                .where(_deployments.c.name == name)
            )).fetchone()

        row = await self.db.read(select)
        if row is None:
            raise NotFoundError(f"Deployment '{name}' not found for flow '{flow_id}'")
        return Deployment.model_validate_json(row.data)

    async def list(self, filter: DeploymentFilter | None = None) -> list[Deployment]:
        """Deployments matching *filter*, ordered by (flow_id, name)."""
        filter = filter or DeploymentFilter()
        query = sa.select(_deployments.c.data)
        if filter.flow_id is not None:
            query = query.where(_deployments.c.flow_id == filter.flow_id)
        if filter.name is not None:
            query = query.where(_deployments.c.name == filter.name)
        if filter.paused is not None:
            query = query.where(_deployments.c.paused == filter.paused)
        if filter.work_pool_name is not None:
            query = query.where(_deployments.c.work_pool_name == filter.work_pool_name)
        query = query.order_by(_deployments.c.flow_id, _deployments.c.name)

        async def select(conn):
            return (await conn.execute(query)).fetchall()

        deployments = [Deployment.model_validate_json(r.data) for r in await self.db.read(select)]
        # tags live inside the JSON blob, so that filter runs here
        if filter.tags:
            deployments = [d for d in deployments if filter.tags <= d.tags]
        end = filter.offset + filter.limit if filter.limit is not None else None
        return deployments[filter.offset:end]

    # ── Internal ─────────────────────────────────────────────────────────────

    @staticmethod
    def _apply(current: Deployment, partial: dict[str, Any]) -> Deployment:
        data = current.model_dump()
        data.update(partial)
        data["revision"] = current.revision + 1
        data["updated_at"] = datetime.now(timezone.utc)
        updated = Deployment.model_validate(data)
        # a hash-derived version follows the content; a client version sticks
        if updated.version is None or (
            "version" not in partial and current.version == content_version(current)
        ):
            updated.version = content_version(updated)
        return updated
