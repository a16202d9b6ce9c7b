"""
Token usage accounting across all completion calls of a run
"""
import copy
import logging
from typing import Any, Dict, List, Optional

from ..models import UsageRecord


def _empty_tokens() -> Dict[str, int]:
    return {"input_tokens": 0, "output_tokens": 0, "total_tokens": 0}


def _add_tokens(target: Dict[str, int], record: UsageRecord):
    target["input_tokens"] += record.input_tokens
    target["output_tokens"] += record.output_tokens
    target["total_tokens"] += record.total_tokens


def _format_tokens(tokens: Dict[str, int]) -> str:
    return (
        f"{tokens['input_tokens']} input, {tokens['output_tokens']} output, "
        f"{tokens['total_tokens']} total"
    )


class TokenUsageAggregator:
    """
    Append-only accumulator grouped by component -> phase -> primary/fallback

    All callers share one event loop, so no locking is needed.
    """

    def __init__(self):
        self.records: List[UsageRecord] = []
        self._components: Dict[str, Dict[str, Any]] = {}

    def track(self, record: UsageRecord):
        self.records.append(record)

        component = self._components.setdefault(
            record.component,
            {"component": record.component, "phases": {}, "total": _empty_tokens()},
        )
        phase = component["phases"].setdefault(record.phase, {"total": _empty_tokens()})

        slot = phase.get(record.model)
        if slot is None:
            slot = {"model_name": record.model_name, **_empty_tokens()}
            phase[record.model] = slot
        _add_tokens(slot, record)
        _add_tokens(phase["total"], record)
        _add_tokens(component["total"], record)

    def track_many(self, records: List[UsageRecord]):
        for record in records:
            self.track(record)

    def get_by_component(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(list(self._components.values()))

    def get_report(self) -> Dict[str, Any]:
        """
        Snapshot of the usage so far

        Returns:
            {"components": [{"component", "phases": [{"phase", "primary"?,
            "fallback"?, "total"}], "total"}], "total": {...}}
        """
        components = []
        grand_total = _empty_tokens()

        for component in self._components.values():
            phases = []
            for phase_name, phase in component["phases"].items():
                phase_report = {"phase": phase_name, "total": dict(phase["total"])}
                for model in ("primary", "fallback"):
                    if model in phase:
                        phase_report[model] = dict(phase[model])
                phases.append(phase_report)

            components.append({
                "component": component["component"],
                "phases": phases,
                "total": dict(component["total"]),
            })
            for key in grand_total:
                grand_total[key] += component["total"][key]

        return {"components": components, "total": grand_total}

    def log_summary(self, logger: Optional[logging.Logger] = None):
        logger = logger or logging.getLogger("chapterindex.usage")
        report = self.get_report()
        if not report["components"]:
            logger.info("[TokenUsage] No LLM calls recorded")
            return

        logger.info("[TokenUsage] Summary:")
        for component in report["components"]:
            logger.info(f"  {component['component']}: {_format_tokens(component['total'])}")
            for phase in component["phases"]:
                logger.info(f"    - {phase['phase']}: {_format_tokens(phase['total'])}")
                for model in ("primary", "fallback"):
                    if model in phase:
                        logger.info(
                            f"        {model} ({phase[model]['model_name']}): "
                            f"{_format_tokens(phase[model])}"
                        )
        logger.info(f"  TOTAL: {_format_tokens(report['total'])}")

    def reset(self):
        self.records = []
        self._components = {}
