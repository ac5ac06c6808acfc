import datetime as dt
import logging
from functools import lru_cache
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator

from dayplanner.config.settings import get_settings
from dayplanner.engine.dependency_resolver import DependencyResolver
from dayplanner.engine.recurrence import RecurrenceEngine
from dayplanner.engine.scheduler import SchedulingEngine, resolve_sleep_schedule
from dayplanner.models.entities import (
    ConflictKind,
    CustomPattern,
    DaySchedule,
    Frequency,
    InstanceStatus,
    RecurrenceRule,
    SchedulingType,
    Severity,
    SleepSchedule,
    TaskDefinition,
    TaskInstance,
    TimeWindow,
)
from dayplanner.storage.cache import ScheduleCache
from dayplanner.utils.timeutil import format_minutes, parse_hhmm

router = APIRouter()
logger = logging.getLogger(__name__)


def _check_hhmm(v: Optional[str]) -> Optional[str]:
    if v is not None:
        parse_hhmm(v)
    return v


class RecurrenceRuleDTO(BaseModel):
    frequency: Frequency = Frequency.NONE
    interval: int = 1
    days_of_week: List[int] = Field(default_factory=list)
    day_of_month: Optional[int] = None
    end_date: Optional[dt.date] = None
    end_after_occurrences: Optional[int] = None
    custom_pattern: Optional[CustomPattern] = None

    def to_domain(self) -> RecurrenceRule:
        return RecurrenceRule(
            frequency=self.frequency,
            interval=self.interval,
            days_of_week=frozenset(self.days_of_week),
            day_of_month=self.day_of_month,
            end_date=self.end_date,
            end_after_occurrences=self.end_after_occurrences,
            custom_pattern=self.custom_pattern,
        )


class TaskDefinitionDTO(BaseModel):
    id: str
    name: str = ""
    scheduling_type: SchedulingType = SchedulingType.FLEXIBLE
    fixed_time: Optional[str] = None
    time_window: TimeWindow = TimeWindow.ANYTIME
    duration_minutes: int
    min_duration_minutes: Optional[int] = None
    priority: int = Field(3, ge=1, le=5)
    is_mandatory: bool = False
    depends_on: Optional[str] = None
    recurrence: RecurrenceRuleDTO = Field(default_factory=RecurrenceRuleDTO)
    start_date: Optional[dt.date] = None
    is_active: bool = True

    @field_validator("duration_minutes")
    @classmethod
    def validate_duration(cls, v: int):
        """Ensure task duration is reasonable (1 min to 24 hours)."""
        if v < 1 or v > 1440:
            raise ValueError("duration must be between 1 and 1440 minutes")
        return v

    @field_validator("fixed_time")
    @classmethod
    def validate_fixed_time(cls, v: Optional[str]):
        return _check_hhmm(v)

    def to_domain(self) -> TaskDefinition:
        return TaskDefinition(
            id=self.id,
            name=self.name,
            scheduling_type=self.scheduling_type,
            fixed_time=self.fixed_time,
            time_window=self.time_window,
            duration_minutes=self.duration_minutes,
            min_duration_minutes=self.min_duration_minutes,
            priority=self.priority,
            is_mandatory=self.is_mandatory,
            depends_on=self.depends_on,
            recurrence=self.recurrence.to_domain(),
            start_date=self.start_date,
            is_active=self.is_active,
        )


class TaskInstanceDTO(BaseModel):
    id: str
    template_id: str
    date: dt.date
    status: InstanceStatus = InstanceStatus.PENDING
    scheduled_time_override: Optional[str] = None

    @field_validator("scheduled_time_override")
    @classmethod
    def validate_override(cls, v: Optional[str]):
        return _check_hhmm(v)

    def to_domain(self) -> TaskInstance:
        return TaskInstance(
            id=self.id,
            template_id=self.template_id,
            date=self.date,
            status=self.status,
            scheduled_time_override=self.scheduled_time_override,
        )


class SleepScheduleDTO(BaseModel):
    wake_time: str
    sleep_time: str

    @field_validator("wake_time", "sleep_time")
    @classmethod
    def validate_times(cls, v: str):
        return _check_hhmm(v)


class ScheduleDayRequest(BaseModel):
    date: dt.date
    definitions: List[TaskDefinitionDTO]
    instances: Optional[List[TaskInstanceDTO]] = None
    sleep: Optional[SleepScheduleDTO] = None


class ConflictFlagDTO(BaseModel):
    kind: ConflictKind
    severity: Severity
    related_block_ids: List[str]


class ScheduledBlockDTO(BaseModel):
    instance_id: str
    template_id: str
    start_minutes_of_day: int
    end_minutes_of_day: int
    start_time: str
    end_time: str
    time_window: TimeWindow
    is_mandatory: bool
    is_anchor: bool
    is_crunched: bool
    conflicts: List[ConflictFlagDTO]


class DayConflictDTO(BaseModel):
    kind: ConflictKind
    severity: Severity
    instance_ids: List[str]


class ImpossibilityDTO(BaseModel):
    required_minutes: int
    available_minutes: int
    mandatory_count: int
    message: str
    suggestions: List[str]


class DayScheduleResponse(BaseModel):
    date: dt.date
    blocks: List[ScheduledBlockDTO]
    conflicts: List[DayConflictDTO]
    cycles: List[List[str]]
    impossible_day: bool
    impossibility: Optional[ImpossibilityDTO] = None
    score: float
    cached: bool = False

    @classmethod
    def from_domain(cls, schedule: DaySchedule) -> "DayScheduleResponse":
        report = schedule.impossibility
        return cls(
            date=schedule.date,
            blocks=[
                ScheduledBlockDTO(
                    instance_id=b.instance_id,
                    template_id=b.template_id,
                    start_minutes_of_day=b.start_minutes_of_day,
                    end_minutes_of_day=b.end_minutes_of_day,
                    start_time=format_minutes(b.start_minutes_of_day),
                    end_time=format_minutes(b.end_minutes_of_day),
                    time_window=b.time_window,
                    is_mandatory=b.is_mandatory,
                    is_anchor=b.is_anchor,
                    is_crunched=b.is_crunched,
                    conflicts=[
                        ConflictFlagDTO(kind=c.kind, severity=c.severity, related_block_ids=list(c.related_block_ids))
                        for c in b.conflicts
                    ],
                )
                for b in schedule.blocks
            ],
            conflicts=[
                DayConflictDTO(kind=c.kind, severity=c.severity, instance_ids=list(c.instance_ids))
                for c in schedule.conflicts
            ],
            cycles=[list(c) for c in schedule.cycles],
            impossible_day=schedule.impossible_day,
            impossibility=None if report is None else ImpossibilityDTO(
                required_minutes=report.required_minutes,
                available_minutes=report.available_minutes,
                mandatory_count=report.mandatory_count,
                message=report.message,
                suggestions=list(report.suggestions),
            ),
            score=schedule.score,
        )


class OccurrencesRequest(BaseModel):
    definition: TaskDefinitionDTO
    start: dt.date
    end: dt.date
    limit: int = Field(366, ge=1, le=5000)


class OccurrencesResponse(BaseModel):
    dates: List[dt.date]


class NextOccurrenceRequest(BaseModel):
    definition: TaskDefinitionDTO
    from_date: dt.date


class NextOccurrenceResponse(BaseModel):
    next: Optional[dt.date] = None


class ValidateRuleRequest(BaseModel):
    rule: RecurrenceRuleDTO
    start_date: Optional[dt.date] = None


class RecurrenceIssueDTO(BaseModel):
    field: str
    message: str


class ValidateRuleResponse(BaseModel):
    valid: bool
    issues: List[RecurrenceIssueDTO]


class ResolveRequest(BaseModel):
    date: dt.date
    definitions: List[TaskDefinitionDTO]
    instances: List[TaskInstanceDTO]


class ResolveResponse(BaseModel):
    order: List[str]
    cycles: List[List[str]]
    flags: Dict[str, List[ConflictFlagDTO]]


@lru_cache(maxsize=1)
def get_recurrence_engine() -> RecurrenceEngine:
    return RecurrenceEngine()


def get_engine(recurrence_engine: RecurrenceEngine = Depends(get_recurrence_engine)) -> SchedulingEngine:
    settings = get_settings()
    return SchedulingEngine(
        DependencyResolver(buffer_minutes=settings.dependency_buffer_minutes),
        recurrence_engine,
        slot_step_minutes=settings.slot_step_minutes,
    )


@lru_cache(maxsize=1)
def get_cache() -> Optional[ScheduleCache]:
    settings = get_settings()
    if not settings.cache_enabled:
        return None
    return ScheduleCache(settings.redis_url, settings.cache_ttl_seconds)


def _definitions(dtos: List[TaskDefinitionDTO]) -> List[TaskDefinition]:
    try:
        return [d.to_domain() for d in dtos]
    except ValueError as exc:
        logger.warning(f"Rejected task definition: {exc}")
        raise HTTPException(status_code=400, detail=str(exc))


def _instances(dtos: List[TaskInstanceDTO]) -> List[TaskInstance]:
    try:
        return [i.to_domain() for i in dtos]
    except ValueError as exc:
        logger.warning(f"Rejected task instance: {exc}")
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/schedule/day", response_model=DayScheduleResponse, summary="Compute the schedule for one day")
def schedule_day(
    req: ScheduleDayRequest,
    engine: SchedulingEngine = Depends(get_engine),
    cache: Optional[ScheduleCache] = Depends(get_cache),
):
    """
    Place every pending task of a day and annotate conflicts.

    **Algorithm**:
    1. Validate input (DTOs with Pydantic validators)
    2. Check cache for an identical request on the same date
    3. Materialize instances from the definitions when none are given
    4. Run the scheduling engine (anchors, dependencies, slotting, crunch, conflicts)
    5. Cache the result

    **Error Handling:**
    - 400: Definitions or instances violate their invariants
    - 422: Malformed request body

    A conflicted or impossible day is still a 200: conflicts and
    `impossible_day` are part of the result.
    """
    logger.info(f"Schedule request for {req.date}: {len(req.definitions)} definitions")

    day_key = req.date.isoformat()
    input_hash = ScheduleCache.hash_inputs(req.model_dump(mode="json"))
    if cache is not None:
        cached = cache.get(day_key, input_hash)
        if cached:
            logger.info("Cache hit")
            return {**cached, "cached": True}

    definitions = _definitions(req.definitions)
    instances = None if req.instances is None else _instances(req.instances)
    settings = get_settings()
    try:
        default_sleep = SleepSchedule(settings.default_wake_time, settings.default_sleep_time)
        override = None if req.sleep is None else SleepSchedule(req.sleep.wake_time, req.sleep.sleep_time)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    schedule = engine.schedule_day(req.date, definitions, instances, resolve_sleep_schedule(default_sleep, override))
    response = DayScheduleResponse.from_domain(schedule)

    logger.info(f"Schedule computed: {len(schedule.blocks)} blocks, score={schedule.score:.2f}")
    if cache is not None:
        cache.set(day_key, input_hash, response.model_dump(mode="json"))
    return response


@router.post("/recurrence/occurrences", response_model=OccurrencesResponse, summary="List occurrence dates")
def occurrences(req: OccurrencesRequest, recurrence_engine: RecurrenceEngine = Depends(get_recurrence_engine)):
    if req.end < req.start:
        raise HTTPException(status_code=400, detail="end must not be before start")
    definition = _definitions([req.definition])[0]
    dates = []
    for d in recurrence_engine.occurrences_in_range(definition, req.start, req.end):
        dates.append(d)
        if len(dates) >= req.limit:
            break
    return {"dates": dates}


@router.post("/recurrence/next", response_model=NextOccurrenceResponse, summary="Next occurrence on or after a date")
def next_occurrence(req: NextOccurrenceRequest, recurrence_engine: RecurrenceEngine = Depends(get_recurrence_engine)):
    definition = _definitions([req.definition])[0]
    return {"next": recurrence_engine.next_occurrence_on_or_after(definition, req.from_date)}


@router.post("/recurrence/validate", response_model=ValidateRuleResponse, summary="Validate a recurrence rule")
def validate_rule(req: ValidateRuleRequest, recurrence_engine: RecurrenceEngine = Depends(get_recurrence_engine)):
    issues = recurrence_engine.validate_rule(req.rule.to_domain(), req.start_date)
    return {
        "valid": not issues,
        "issues": [{"field": i.field, "message": i.message} for i in issues],
    }


@router.post("/dependencies/resolve", response_model=ResolveResponse, summary="Order a day's tasks by dependency")
def resolve_dependencies(req: ResolveRequest, engine: SchedulingEngine = Depends(get_engine)):
    definitions = _definitions(req.definitions)
    tasks, satisfied = engine.active_tasks(req.date, definitions, _instances(req.instances))
    resolution = engine.dependency_resolver.resolve(tasks, satisfied)
    return {
        "order": [t.id for t in resolution.order],
        "cycles": [list(c) for c in resolution.cycles],
        "flags": {
            instance_id: [
                {"kind": f.kind, "severity": f.severity, "related_block_ids": list(f.related_block_ids)}
                for f in found
            ]
            for instance_id, found in resolution.flags.items()
        },
    }
