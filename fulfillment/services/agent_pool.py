"""
Agent Pool Service - Capacity-aware selection of human agents.

current_active_requests is a cached projection of an agent's live work. It is
changed only by select_agent() and release(), each a single conditional
UPDATE, never by read-modify-write.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fulfillment.config import settings
from fulfillment.db.models import Agent, AgentCategory, ServiceRequest
from fulfillment.exceptions import (
    AgentNotFoundError,
    CapacityBelowLoadError,
    DataIntegrityError,
    NoAgentAvailableError,
    WriteVerificationError,
)
from fulfillment.models.api import ServiceCategory
from fulfillment.models.domain import AgentData, AgentStats
from fulfillment.models.lifecycle import AGENT_ACTIVE_STATUSES

logger = get_logger(__name__)


class AgentPoolService:
    """Service for agent registration, selection and load bookkeeping."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def select_agent(self, category: ServiceCategory) -> AgentData:
        """
        Pick the least-loaded eligible agent and take one of its slots.

        Order: current load ascending, then longest idle (never assigned
        first). Selection and increment are one statement. Flushes only.

        Raises:
            NoAgentAvailableError: no available agent has spare capacity
        """
        for attempt in range(settings.dispatch_claim_attempts):
            candidate = (
                select(Agent.id)
                .join(AgentCategory, AgentCategory.agent_id == Agent.id)
                .where(
                    AgentCategory.category == category.value,
                    Agent.is_available.is_(True),
                    Agent.current_active_requests < Agent.max_active_requests,
                )
                .order_by(
                    Agent.current_active_requests.asc(),
                    Agent.last_assigned_at.asc().nulls_first(),
                    Agent.created_at.asc(),
                )
                .limit(1)
                .with_for_update(skip_locked=True, of=Agent)
                .scalar_subquery()
            )
            stmt = (
                update(Agent)
                .where(
                    Agent.id == candidate,
                    Agent.is_available.is_(True),
                    Agent.current_active_requests < Agent.max_active_requests,
                )
                .values(
                    current_active_requests=Agent.current_active_requests + 1,
                    last_assigned_at=datetime.now(UTC),
                )
                .returning(Agent.id)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            agent_id = result.scalar_one_or_none()

            if agent_id is not None:
                agent = await self._reload(agent_id)
                logger.info(
                    "agent_slot_claimed",
                    agent_id=str(agent_id),
                    category=category.value,
                    load=agent.current_active_requests,
                    capacity=agent.max_active_requests,
                    attempt=attempt + 1,
                )
                return await self._agent_to_domain(agent)

            if not await self._has_eligible_agent(category):
                break

        logger.info("no_agent_available", category=category.value)
        raise NoAgentAvailableError(category.value)

    async def release(
        self, agent_id: UUID, completed: bool, processed_amount_minor: int = 0
    ) -> AgentData:
        """
        Give back one slot. Completion also bumps the agent's totals.

        Flushes only.

        Raises:
            AgentNotFoundError: agent doesn't exist
            DataIntegrityError: agent has no active requests to release
        """
        values: dict[str, object] = {
            "current_active_requests": Agent.current_active_requests - 1,
        }
        if completed:
            values["total_completed"] = Agent.total_completed + 1
            values["total_processed_minor"] = Agent.total_processed_minor + processed_amount_minor

        stmt = (
            update(Agent)
            .where(Agent.id == agent_id, Agent.current_active_requests > 0)
            .values(**values)
            .returning(Agent.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.scalar_one_or_none() is None:
            if await self.session.get(Agent, agent_id) is None:
                raise AgentNotFoundError(agent_id)
            logger.error("agent_release_underflow", agent_id=str(agent_id))
            raise DataIntegrityError(f"Agent {agent_id} has no active requests to release")

        agent = await self._reload(agent_id)
        logger.info(
            "agent_slot_released",
            agent_id=str(agent_id),
            completed=completed,
            load=agent.current_active_requests,
        )
        return await self._agent_to_domain(agent)

    async def register_agent(
        self,
        display_name: str,
        categories: list[ServiceCategory],
        max_active_requests: int = 20,
        is_available: bool = True,
    ) -> AgentData:
        """Create an agent serving the given categories. Commits."""
        inventory = [c.value for c in categories if c.is_inventory]
        if inventory:
            raise ValueError(f"Categories fulfilled from inventory cannot have agents: {inventory}")
        if max_active_requests < 1:
            raise ValueError(f"max_active_requests must be positive: {max_active_requests}")

        agent = Agent(
            display_name=display_name,
            max_active_requests=max_active_requests,
            is_available=is_available,
        )
        self.session.add(agent)
        await self.session.flush()

        self.session.add_all(
            AgentCategory(agent_id=agent.id, category=c.value) for c in dict.fromkeys(categories)
        )
        await self.session.flush()
        await self.session.commit()

        logger.info(
            "agent_registered",
            agent_id=str(agent.id),
            categories=[c.value for c in categories],
            capacity=max_active_requests,
        )
        return await self._agent_to_domain(agent)

    async def set_categories(self, agent_id: UUID, categories: list[ServiceCategory]) -> AgentData:
        """Replace the categories an agent serves. Commits."""
        agent = await self._require(agent_id)
        await self.session.execute(delete(AgentCategory).where(AgentCategory.agent_id == agent_id))
        self.session.add_all(
            AgentCategory(agent_id=agent_id, category=c.value) for c in dict.fromkeys(categories)
        )
        await self.session.flush()
        await self.session.commit()
        return await self._agent_to_domain(agent)

    async def set_availability(self, agent_id: UUID, is_available: bool) -> AgentData:
        """
        Toggle whether an agent receives new work. Commits.

        In-flight requests stay with the agent either way.

        Raises:
            AgentNotFoundError: agent doesn't exist
            CapacityBelowLoadError: re-enabling an agent whose load exceeds its capacity
        """
        conditions = [Agent.id == agent_id]
        if is_available:
            conditions.append(Agent.current_active_requests <= Agent.max_active_requests)

        stmt = (
            update(Agent)
            .where(*conditions)
            .values(is_available=is_available)
            .returning(Agent.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.scalar_one_or_none() is None:
            agent = await self._require(agent_id)
            raise CapacityBelowLoadError(
                agent_id, agent.current_active_requests, agent.max_active_requests
            )

        await self.session.commit()
        agent = await self._reload(agent_id)
        logger.info("agent_availability_changed", agent_id=str(agent_id), is_available=is_available)
        return await self._agent_to_domain(agent)

    async def set_capacity(self, agent_id: UUID, max_active_requests: int) -> AgentData:
        """
        Change how many requests an agent may hold at once. Commits.

        Raises:
            AgentNotFoundError: agent doesn't exist
            CapacityBelowLoadError: an available agent already holds more than that
        """
        if max_active_requests < 1:
            raise ValueError(f"max_active_requests must be positive: {max_active_requests}")

        stmt = (
            update(Agent)
            .where(
                Agent.id == agent_id,
                (Agent.current_active_requests <= max_active_requests)
                | Agent.is_available.is_(False),
            )
            .values(max_active_requests=max_active_requests)
            .returning(Agent.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.scalar_one_or_none() is None:
            agent = await self._require(agent_id)
            raise CapacityBelowLoadError(
                agent_id, agent.current_active_requests, max_active_requests
            )

        await self.session.commit()
        agent = await self._reload(agent_id)
        logger.info("agent_capacity_changed", agent_id=str(agent_id), capacity=max_active_requests)
        return await self._agent_to_domain(agent)

    async def get_agent(self, agent_id: UUID) -> AgentData:
        """
        Raises:
            AgentNotFoundError: agent doesn't exist
        """
        agent = await self._require(agent_id)
        return await self._agent_to_domain(agent)

    async def list_agents(self, category: ServiceCategory | None = None) -> list[AgentData]:
        stmt = select(Agent).order_by(Agent.created_at)
        if category is not None:
            stmt = stmt.join(AgentCategory, AgentCategory.agent_id == Agent.id).where(
                AgentCategory.category == category.value
            )
        result = await self.session.execute(stmt)
        return [await self._agent_to_domain(a) for a in result.scalars().all()]

    async def agent_stats(self, agent_id: UUID) -> AgentStats:
        """
        Agent snapshot plus its load re-derived from live requests.

        Raises:
            AgentNotFoundError: agent doesn't exist
        """
        agent = await self._require(agent_id)
        stmt = select(func.count()).where(
            ServiceRequest.assigned_agent_id == agent_id,
            ServiceRequest.status.in_([s.value for s in AGENT_ACTIVE_STATUSES]),
        )
        result = await self.session.execute(stmt)
        derived = int(result.scalar_one())

        if derived != agent.current_active_requests:
            logger.warning(
                "agent_load_drift",
                agent_id=str(agent_id),
                cached=agent.current_active_requests,
                derived=derived,
            )

        return AgentStats(agent=await self._agent_to_domain(agent), derived_active_requests=derived)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _has_eligible_agent(self, category: ServiceCategory) -> bool:
        stmt = (
            select(func.count())
            .select_from(Agent)
            .join(AgentCategory, AgentCategory.agent_id == Agent.id)
            .where(
                AgentCategory.category == category.value,
                Agent.is_available.is_(True),
                Agent.current_active_requests < Agent.max_active_requests,
            )
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one()) > 0

    async def _require(self, agent_id: UUID) -> Agent:
        agent = await self.session.get(Agent, agent_id, populate_existing=True)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    async def _reload(self, agent_id: UUID) -> Agent:
        agent = await self.session.get(Agent, agent_id, populate_existing=True)
        if agent is None:
            raise WriteVerificationError(f"Agent {agent_id} not found after update")
        return agent

    async def _categories(self, agent_id: UUID) -> tuple[ServiceCategory, ...]:
        stmt = (
            select(AgentCategory.category)
            .where(AgentCategory.agent_id == agent_id)
            .order_by(AgentCategory.category)
        )
        result = await self.session.execute(stmt)
        return tuple(ServiceCategory(c) for c in result.scalars().all())

    async def _agent_to_domain(self, agent: Agent) -> AgentData:
        """Convert ORM agent to domain model."""
        return AgentData(
            agent_id=agent.id,
            display_name=agent.display_name,
            categories=await self._categories(agent.id),
            is_available=agent.is_available,
            max_active_requests=agent.max_active_requests,
            current_active_requests=agent.current_active_requests,
            total_completed=agent.total_completed,
            total_processed_minor=agent.total_processed_minor,
            last_assigned_at=agent.last_assigned_at,
        )
