"""
Execution audit logging and aggregate metrics.

Writes are best-effort: failures are logged (with a critical fallback line
carrying the entry) and never propagate to the pipeline. The executor
dispatches writes without awaiting them; per execution id the create is
always applied before any update.
"""

import asyncio
import csv
import io
import json
import logging
import math
import time
from collections import Counter
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from clinicinsights.application.ports.repositories.audit_store import AuditStore
from clinicinsights.core.config import AuditSettings
from clinicinsights.domain.audit import (
    AuditEntry,
    AuditFilter,
    AuditMetrics,
    AuditPerformance,
    AuditQueryResult,
    AuditResponse,
    ErrorSummary,
    PipelineBreakdown,
)

logger = logging.getLogger(__name__)

EXPORT_LIMIT = 10000

CSV_COLUMNS = [
    "executionId",
    "timestamp",
    "pipelineType",
    "patientId",
    "sessionId",
    "userId",
    "organizationId",
    "success",
    "duration_ms",
    "cache_hit",
    "prompt_tokens",
    "completion_tokens",
    "total_tokens",
    "estimated_cost",
    "error",
]

AuditListener = Callable[[str, AuditEntry], None]


@dataclass
class AuditHealth:
    healthy: bool
    latency_ms: float
    error: Optional[str] = None


def percentile(values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile over ``values`` (index ceil(n*p)-1, clamped)."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = math.ceil(len(ordered) * p) - 1
    index = min(max(index, 0), len(ordered) - 1)
    return ordered[index]


class AuditService:
    """Best-effort execution audit over an AuditStore."""

    def __init__(self, store: AuditStore, settings: Optional[AuditSettings] = None) -> None:
        self.store = store
        self.settings = settings or AuditSettings()
        self._listeners: List[AuditListener] = []
        self._pending: Dict[str, asyncio.Task] = {}

    def add_listener(self, listener: AuditListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: str, entry: AuditEntry) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, entry)
            except Exception as e:
                logger.warning(f"Audit listener failed for event={event}: {e}")

    # ------------------------------------------------------------------
    # Payload preparation
    # ------------------------------------------------------------------

    def _truncate(self, payload: Any) -> Any:
        if payload is None:
            return None
        serialized = json.dumps(payload, default=str)
        size = len(serialized.encode("utf-8"))
        if size <= self.settings.max_data_size_bytes:
            return json.loads(serialized)
        return {
            "_truncated": True,
            "_original_size": size,
            "preview": serialized[: self.settings.max_data_size_bytes],
        }

    def _summarize(self, payload: Any) -> Any:
        if payload is None:
            return None
        summary: Dict[str, Any] = {"_summary": True, "type": type(payload).__name__}
        if isinstance(payload, dict):
            summary["keys"] = sorted(payload.keys())
        summary["size"] = len(json.dumps(payload, default=str))
        return summary

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        cost = (
            prompt_tokens / 1000 * self.settings.cost_per_1k_prompt_tokens
            + completion_tokens / 1000 * self.settings.cost_per_1k_completion_tokens
        )
        return round(cost, 6)

    def _prepare_response(self, response: AuditResponse) -> AuditResponse:
        if self.settings.include_response_data:
            return replace(response, data=self._truncate(response.data))
        return replace(response, data=self._summarize(response.data))

    def _prepare_performance(self, performance: AuditPerformance) -> AuditPerformance:
        usage = performance.token_usage
        if usage is not None and self.settings.calculate_costs:
            usage = replace(usage, estimated_cost=self.estimate_cost(usage.prompt, usage.completion))
            return replace(performance, token_usage=usage)
        return performance

    def _prepare(self, entry: AuditEntry) -> AuditEntry:
        variables = entry.request.variables if self.settings.include_request_data else None
        request = replace(entry.request, variables=self._truncate(variables))
        return replace(
            entry,
            request=request,
            response=self._prepare_response(entry.response),
            performance=self._prepare_performance(entry.performance),
            metadata=dict(entry.metadata),
        )

    def _check_thresholds(self, entry: AuditEntry) -> None:
        if entry.performance.total_duration_ms > self.settings.high_latency_threshold_ms:
            logger.warning(
                f"High latency execution_id={entry.execution_id} pipeline={entry.pipeline_type} "
                f"duration_ms={entry.performance.total_duration_ms:.0f}"
            )
            self._emit("high_latency", entry)
        if entry.total_tokens > self.settings.high_token_threshold:
            logger.warning(
                f"High token usage execution_id={entry.execution_id} pipeline={entry.pipeline_type} "
                f"tokens={entry.total_tokens}"
            )
            self._emit("high_token_usage", entry)

    def _emit_outcome(self, entry: AuditEntry) -> None:
        self._emit("execution_complete" if entry.response.success else "execution_error", entry)
        self._check_thresholds(entry)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def log_execution(self, entry: AuditEntry) -> Optional[str]:
        """Persist a full record. Never raises."""
        if not self.settings.enabled:
            return None
        prepared = entry
        try:
            prepared = self._prepare(entry)
            await self.store.insert(prepared)
        except Exception as e:
            logger.error(f"Failed to write audit entry execution_id={entry.execution_id}: {e}")
            self._fallback_log(prepared)
            return None

        if prepared.metadata.get("status") == "started":
            self._emit("execution_start", prepared)
        else:
            self._emit_outcome(prepared)
        return prepared.execution_id

    async def update_execution(
        self,
        execution_id: str,
        response: Optional[AuditResponse] = None,
        performance: Optional[AuditPerformance] = None,
        metadata: Optional[Dict[str, Any]] = None,
        entry: Optional[AuditEntry] = None,
    ) -> bool:
        """Patch response/performance/metadata of an existing record. Never raises."""
        if not self.settings.enabled:
            return False
        fields: Dict[str, Any] = {}
        try:
            if response is not None:
                response = self._prepare_response(response)
                fields["response"] = asdict(response)
            if performance is not None:
                performance = self._prepare_performance(performance)
                fields["performance"] = asdict(performance)
            if metadata:
                fields["metadata"] = json.loads(json.dumps(metadata, default=str))
            updated = await self.store.update(execution_id, fields)
        except Exception as e:
            logger.error(f"Failed to update audit entry execution_id={execution_id}: {e}")
            self._fallback_log({"execution_id": execution_id, **fields})
            return False

        if not updated:
            logger.warning(f"Audit entry not found for update execution_id={execution_id}")
            return False

        if entry is not None:
            self._emit_outcome(
                replace(
                    entry,
                    response=response or entry.response,
                    performance=performance or entry.performance,
                )
            )
        return True

    def _fallback_log(self, data: Any) -> None:
        """Last-resort record of an entry the store rejected"""
        if isinstance(data, AuditEntry):
            data = data.to_document()
        logger.critical(f"AI_AUDIT_FALLBACK: {json.dumps(data, default=str)}")

    # Dispatch-and-forget variants used on the pipeline's critical path

    def dispatch_log(self, entry: AuditEntry) -> asyncio.Task:
        return self._chain(entry.execution_id, lambda: self.log_execution(entry))

    def dispatch_update(self, execution_id: str, **kwargs: Any) -> asyncio.Task:
        return self._chain(execution_id, lambda: self.update_execution(execution_id, **kwargs))

    def _chain(self, execution_id: str, operation: Callable[[], Any]) -> asyncio.Task:
        previous = self._pending.get(execution_id)

        async def run():
            if previous is not None:
                await asyncio.gather(previous, return_exceptions=True)
            try:
                return await operation()
            except Exception as e:
                logger.error(f"Audit task failed execution_id={execution_id}: {e}")
                return None

        task = asyncio.create_task(run())
        self._pending[execution_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._pending.get(execution_id) is done:
                del self._pending[execution_id]

        task.add_done_callback(_forget)
        return task

    async def flush(self) -> None:
        """Wait for every dispatched audit write."""
        while self._pending:
            await asyncio.gather(*list(self._pending.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_executions(self, audit_filter: Optional[AuditFilter] = None) -> AuditQueryResult:
        audit_filter = audit_filter or AuditFilter()
        entries, total = await self.store.find(audit_filter)
        has_more = audit_filter.offset + len(entries) < total
        return AuditQueryResult(entries=entries, total=total, has_more=has_more)

    async def get_metrics(
        self,
        start_date: datetime,
        end_date: datetime,
        organization_id: Optional[str] = None,
    ) -> AuditMetrics:
        entries, _ = await self.store.find(
            AuditFilter(
                start_date=start_date,
                end_date=end_date,
                organization_id=organization_id,
                limit=None,
            )
        )
        # placeholders that never completed carry no outcome
        entries = [entry for entry in entries if entry.metadata.get("status") != "started"]
        if not entries:
            return AuditMetrics()

        durations = [entry.performance.total_duration_ms for entry in entries]
        total_tokens = sum(entry.total_tokens for entry in entries)
        successes = sum(1 for entry in entries if entry.response.success)
        estimated_cost = 0.0
        for entry in entries:
            usage = entry.performance.token_usage
            if usage is not None and usage.estimated_cost:
                estimated_cost += usage.estimated_cost

        breakdown: Dict[str, PipelineBreakdown] = {}
        grouped: Dict[str, List[AuditEntry]] = {}
        for entry in entries:
            grouped.setdefault(entry.pipeline_type, []).append(entry)
        for pipeline_type, group in grouped.items():
            count = len(group)
            breakdown[pipeline_type] = PipelineBreakdown(
                count=count,
                avg_duration_ms=sum(e.performance.total_duration_ms for e in group) / count,
                success_rate=sum(1 for e in group if e.response.success) / count,
                avg_tokens=sum(e.total_tokens for e in group) / count,
            )

        error_counts: Counter = Counter()
        error_messages: Dict[str, str] = {}
        for entry in entries:
            if entry.response.success:
                continue
            code = entry.response.error_code or "SYSTEM_999"
            error_counts[code] += 1
            error_messages.setdefault(code, entry.response.error or "")

        return AuditMetrics(
            total_executions=len(entries),
            successful_executions=successes,
            failed_executions=len(entries) - successes,
            cache_hits=sum(1 for entry in entries if entry.performance.cache_hit),
            average_duration_ms=sum(durations) / len(durations),
            p50_duration_ms=percentile(durations, 0.50),
            p95_duration_ms=percentile(durations, 0.95),
            p99_duration_ms=percentile(durations, 0.99),
            total_tokens=total_tokens,
            average_tokens=total_tokens / len(entries),
            estimated_total_cost=round(estimated_cost, 6),
            pipeline_breakdown=breakdown,
            top_errors=[
                ErrorSummary(code=code, count=count, message=error_messages[code])
                for code, count in error_counts.most_common(10)
            ],
        )

    async def export_audit_log(self, audit_filter: Optional[AuditFilter] = None, format: str = "json") -> str:
        """Serialize matching entries as JSON or fixed-column CSV."""
        audit_filter = replace(audit_filter or AuditFilter(), limit=EXPORT_LIMIT, offset=0)
        entries, _ = await self.store.find(audit_filter)

        if format == "json":
            return json.dumps([entry.to_document() for entry in entries], default=str, indent=2)
        if format != "csv":
            raise ValueError(f"Unsupported export format: {format}")

        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for entry in entries:
            usage = entry.performance.token_usage
            writer.writerow(
                [
                    entry.execution_id,
                    entry.timestamp.isoformat(),
                    entry.pipeline_type,
                    entry.patient_id or "",
                    entry.session_id or "",
                    entry.user_id or "",
                    entry.organization_id or "",
                    str(entry.response.success).lower(),
                    entry.performance.total_duration_ms,
                    str(entry.performance.cache_hit).lower(),
                    usage.prompt if usage else 0,
                    usage.completion if usage else 0,
                    usage.total if usage else 0,
                    usage.estimated_cost if usage and usage.estimated_cost is not None else "",
                    entry.response.error or "",
                ]
            )
        return buffer.getvalue()

    async def cleanup(self, retention_days: Optional[int] = None) -> int:
        """Delete entries older than the retention window; returns count deleted."""
        days = retention_days if retention_days is not None else self.settings.retention_days
        cutoff = datetime.utcnow() - timedelta(days=days)
        matching = await self.store.count_before(cutoff)
        if matching == 0:
            return 0
        deleted = await self.store.delete_before(cutoff)
        logger.info(f"Audit cleanup deleted {deleted} entr(ies) older than {days} day(s)")
        return deleted

    async def health_check(self) -> AuditHealth:
        started = time.perf_counter()
        try:
            await self.store.ping()
        except Exception as e:
            return AuditHealth(False, (time.perf_counter() - started) * 1000.0, str(e))
        return AuditHealth(True, (time.perf_counter() - started) * 1000.0)
