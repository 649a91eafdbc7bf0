"""
In-memory patient context aggregator for tests and local runs.
"""

from typing import Any, Dict, List, Optional

from clinicinsights.application.ports.services.context_aggregator import ContextAggregator
from clinicinsights.core.cancellation import CancellationToken, check_cancelled
from clinicinsights.core.exceptions import ContextNotFoundError
from clinicinsights.domain.patient_context import assemble_context


class InMemoryContextAggregator(ContextAggregator):
    """Serves context from chart records held in dicts keyed by patient id."""

    def __init__(self) -> None:
        self._patients: Dict[str, Dict[str, Any]] = {}
        self._sessions: Dict[str, List[Dict[str, Any]]] = {}
        self._assessments: Dict[str, List[Dict[str, Any]]] = {}
        self._alerts: Dict[str, List[Dict[str, Any]]] = {}

    def add_patient(
        self,
        patient_id: str,
        patient: Dict[str, Any],
        sessions: Optional[List[Dict[str, Any]]] = None,
        assessments: Optional[List[Dict[str, Any]]] = None,
        alerts: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self._patients[patient_id] = patient
        # newest first, matching the database adapter
        self._sessions[patient_id] = sorted(sessions or [], key=lambda s: s.get("date", ""), reverse=True)
        self._assessments[patient_id] = sorted(
            assessments or [], key=lambda a: a.get("date", ""), reverse=True
        )
        self._alerts[patient_id] = [a for a in (alerts or []) if not a.get("resolved")]

    async def aggregate(
        self,
        patient_id: str,
        purpose: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        check_cancelled(cancel_token)
        patient = self._patients.get(patient_id)
        if patient is None:
            raise ContextNotFoundError(patient_id)
        return assemble_context(
            patient_id,
            purpose,
            patient,
            self._sessions.get(patient_id),
            self._assessments.get(patient_id),
            self._alerts.get(patient_id),
        )
