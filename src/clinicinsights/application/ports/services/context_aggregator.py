"""
Context aggregation service interface.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from clinicinsights.core.cancellation import CancellationToken


class ContextAggregator(ABC):
    """Abstract source of patient context for prompt compilation."""

    @abstractmethod
    async def aggregate(
        self,
        patient_id: str,
        purpose: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """
        Assemble the context a pipeline needs for one patient.

        Args:
            patient_id: Patient whose records are aggregated
            purpose: Pipeline purpose, used to select relevant sections
            cancel_token: Execution cancellation signal

        Returns:
            Mapping merged into the template variables

        Raises:
            ContextNotFoundError: no records exist for the patient
            InsufficientContextError: records exist but are too thin for the purpose
        """
        pass

    async def health_check(self) -> bool:
        """Report whether the context source is reachable."""
        return True
