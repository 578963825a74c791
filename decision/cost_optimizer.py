# decision/cost_optimizer.py

import logging
import time

from backend.config import (
    COST_LOOKBACK_SECONDS,
    INSTANCE_MONTHLY_COST,
    LOW_UTILIZATION_CPU,
    MIN_POINTS_FOR_COST_ANALYSIS,
)
from scaling.models import CostAnalysisSnapshot, CostOpportunity


def get_instance_cost(service_type):
    """Flat monthly price of one instance for a service type."""
    key = getattr(service_type, "value", service_type)
    return INSTANCE_MONTHLY_COST.get(key, INSTANCE_MONTHLY_COST["unknown"])


class CostOptimizer:
    """
    Estimates fleet cost and flags over-provisioned services.

    Advisory only: opportunities are persisted for review, never turned into
    scaling intents here.
    """

    def __init__(self, registry, store, writer=None, clock=time.time):
        self.registry = registry
        self.store = store
        self.writer = writer
        self.clock = clock
        self.latest = None

    def analyze(self):
        now = self.clock()
        analysis = CostAnalysisSnapshot(timestamp=now)

        for service in self.registry.all():
            instance_cost = get_instance_cost(service.type)
            analysis.total_instances += service.current_instances
            analysis.estimated_monthly_cost += service.current_instances * instance_cost

            if self.store.count(service.id, "cpu") < MIN_POINTS_FOR_COST_ANALYSIS:
                continue
            window = self.store.recent(service.id, "cpu", COST_LOOKBACK_SECONDS, now=now)
            if not window:
                continue
            avg_cpu = sum(s.value for s in window) / len(window)

            if avg_cpu < LOW_UTILIZATION_CPU and service.current_instances > service.min_instances:
                analysis.opportunities.append(CostOpportunity(
                    service_id=service.id,
                    service_name=service.name,
                    reason=f"Average CPU {avg_cpu:.1f}% over the last hour is very low",
                    potential_savings=instance_cost,
                ))

        return analysis

    def run_cycle(self):
        analysis = self.analyze()
        self.latest = analysis
        logging.info(
            f"Cost analysis: {analysis.total_instances} instances, "
            f"${analysis.estimated_monthly_cost:.2f}/month, "
            f"{len(analysis.opportunities)} optimization opportunities"
        )
        if self.writer is not None:
            self.writer.write("cost-analysis", analysis.to_dict())
        return analysis
