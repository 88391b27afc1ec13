"""
Cadence & lock-key registry.

Static table of every scheduled job: its cron cadence (owned by the
external scheduler), route, lock resource and lock TTL. Read by the
executors when acquiring locks and surfaced by the status API. Never
mutated at runtime.
"""

from dataclasses import asdict, dataclass
from types import MappingProxyType

from clawstrate.core.models import PipelineStageName


PIPELINE_STAGE_ORDER: tuple[PipelineStageName, ...] = (
    PipelineStageName.INGEST,
    PipelineStageName.ENRICH,
    PipelineStageName.ANALYZE,
    PipelineStageName.AGGREGATE,
    PipelineStageName.COORDINATION,
    PipelineStageName.BRIEFING,
)

# Stages the full pipeline hands to their own schedules in split mode,
# and that the time budget may cut.
HEAVY_STAGES: frozenset[PipelineStageName] = frozenset({
    PipelineStageName.ANALYZE,
    PipelineStageName.AGGREGATE,
    PipelineStageName.COORDINATION,
    PipelineStageName.BRIEFING,
})

# Briefing output is not served from the cached read surfaces
NO_CACHE_INVALIDATION: frozenset[PipelineStageName] = frozenset({
    PipelineStageName.BRIEFING,
})

PIPELINE_LOCK = "pipeline"


@dataclass(frozen=True)
class JobSchedule:
    """Cadence and lock settings for one scheduled job."""
    name: str
    cron: str
    route: str
    lock_resource: str
    lock_ttl_seconds: int
    description: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


_SCHEDULES = (
    JobSchedule("ingest", "*/30 * * * *", "/api/cron/ingest", "ingest", 120,
                "Fetch new posts and comments"),
    JobSchedule("enrich", "*/30 * * * *", "/api/cron/enrich", "enrich", 300,
                "Classify and score newly ingested content"),
    JobSchedule("analyze", "5 */2 * * *", "/api/cron/analyze", "analyze", 300,
                "Influence, activity and temporal scoring"),
    JobSchedule("aggregate", "15 */2 * * *", "/api/cron/aggregate", "aggregate", 300,
                "Topic and network aggregates"),
    JobSchedule("coordination", "25 */2 * * *", "/api/cron/coordination", "coordination", 300,
                "Coordination signals and community detection"),
    JobSchedule("briefing", "0 */6 * * *", "/api/cron/briefing", "briefing", 120,
                "Narrative briefing generation"),
    JobSchedule("pipeline", "*/30 * * * *", "/api/cron/pipeline", PIPELINE_LOCK, 900,
                "Full ordered pipeline"),
    JobSchedule("topic-merges", "0 */6 * * *", "/api/cron/topic-merges", "topic-merges", 900,
                "Semantic topic merge proposals"),
    JobSchedule("onchain", "*/10 * * * *", "/api/cron/onchain", "onchain", 300,
                "On-chain event sync"),
    JobSchedule("onchain-backfill", "5 * * * *", "/api/cron/onchain-backfill", "onchain-backfill", 300,
                "On-chain historical backfill"),
)

SCHEDULES: MappingProxyType = MappingProxyType({s.name: s for s in _SCHEDULES})


def get_schedule(name: str | PipelineStageName) -> JobSchedule:
    """
    Look up a job's schedule.

    Raises:
        KeyError: If the job is not registered
    """
    key = name.value if isinstance(name, PipelineStageName) else name
    return SCHEDULES[key]
