import logging
from datetime import date
from typing import Iterable, List

from dayplanner.engine.recurrence import RecurrenceEngine
from dayplanner.models.entities import InstanceStatus, TaskDefinition, TaskInstance

logger = logging.getLogger(__name__)


def instance_id_for(template_id: str, day: date) -> str:
    return f"{template_id}@{day.isoformat()}"


class InstanceMaterializer:
    """
    Derives the instances that should exist for a date.

    Stored instances are kept exactly as given (user edits win); definitions
    that recur on the date and have no stored instance get a fresh pending one.
    Nothing is persisted here.
    """

    def __init__(self, recurrence_engine: RecurrenceEngine):
        self.recurrence_engine = recurrence_engine

    def materialize(
        self,
        day: date,
        definitions: Iterable[TaskDefinition],
        stored_instances: Iterable[TaskInstance] = (),
    ) -> List[TaskInstance]:
        instances = [i for i in stored_instances if i.date == day]
        covered = {i.template_id for i in instances}

        for definition in definitions:
            if definition.id in covered or not definition.is_active:
                continue
            if self.recurrence_engine.should_occur_on_date(definition, day):
                instances.append(
                    TaskInstance(
                        id=instance_id_for(definition.id, day),
                        template_id=definition.id,
                        date=day,
                        status=InstanceStatus.PENDING,
                    )
                )

        logger.debug(f"Materialized {len(instances)} instances for {day} ({len(covered)} stored)")
        return instances
