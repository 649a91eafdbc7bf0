"""
MongoDB-backed patient context aggregator.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING

from clinicinsights.application.ports.services.context_aggregator import ContextAggregator
from clinicinsights.core.cancellation import CancellationToken, check_cancelled
from clinicinsights.core.config import DatabaseSettings
from clinicinsights.core.exceptions import ContextNotFoundError
from clinicinsights.domain.patient_context import (
    assemble_context,
    assessment_limit,
    required_sections,
    session_limit,
)

logger = logging.getLogger(__name__)


class MongoContextAggregator(ContextAggregator):
    """Reads the chart sections a purpose needs from the patient collections."""

    def __init__(self, db: AsyncIOMotorDatabase, settings: Optional[DatabaseSettings] = None):
        settings = settings or DatabaseSettings()
        self.db = db
        self.patients = db[settings.patients_collection]
        self.sessions = db[settings.sessions_collection]
        self.assessments = db[settings.assessments_collection]
        self.alerts = db[settings.alerts_collection]

    async def _recent(self, collection, patient_id: str, limit: int) -> List[Dict[str, Any]]:
        cursor = (
            collection.find({"patient_id": patient_id}, {"_id": 0})
            .sort("date", DESCENDING)
            .limit(limit)
        )
        return await cursor.to_list(length=limit)

    async def _open_alerts(self, patient_id: str) -> List[Dict[str, Any]]:
        cursor = self.alerts.find({"patient_id": patient_id, "resolved": {"$ne": True}}, {"_id": 0})
        return await cursor.to_list(length=50)

    async def aggregate(
        self,
        patient_id: str,
        purpose: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        check_cancelled(cancel_token)
        patient = await self.patients.find_one({"patient_id": patient_id}, {"_id": 0})
        if patient is None:
            logger.info(f"Patient not found patient_id={patient_id}")
            raise ContextNotFoundError(patient_id)

        check_cancelled(cancel_token)
        sections = required_sections(purpose)

        async def nothing() -> List[Dict[str, Any]]:
            return []

        sessions, assessments, alerts = await asyncio.gather(
            self._recent(self.sessions, patient_id, session_limit(purpose))
            if "recent_sessions" in sections
            else nothing(),
            self._recent(self.assessments, patient_id, assessment_limit(purpose))
            if "assessment_history" in sections
            else nothing(),
            self._open_alerts(patient_id) if "alerts" in sections else nothing(),
        )

        context = assemble_context(patient_id, purpose, patient, sessions, assessments, alerts)
        logger.debug(
            f"Assembled context patient_id={patient_id} purpose={purpose} "
            f"tokens={context['metadata']['token_count']}"
        )
        return context

    async def health_check(self) -> bool:
        await self.db.command("ping")
        return True
