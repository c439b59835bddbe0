from __future__ import annotations

import concurrent.futures
import functools
import logging
import threading
from typing import Any, Callable

from .bus import MessageBus
from .discovery import discover_activities_url
from .enrichment import enrich_activity
from .errors import HarvestError, UnknownMessageError
from .history import fetch_activity_history
from .merge import fill_forward_person
from .messages import CollectRequest, Message, ProgressMessage, ResultMessage, parse_message
from .models import ActivityRecord, CollectorDelta, CollectorPayload, PersonRecord
from .normalizer import select_new_activities
from .site_client import SiteClient


logger = logging.getLogger(__name__)

Publisher = Callable[[Message], None]

ENRICHMENT_WORKERS = 2
COLLECTOR_BUSY_ERROR = "A collection is already running."


def _emit(publish: Publisher, stage: str, **fields: Any) -> None:
    publish(ProgressMessage(stage=stage, **fields))


def _stage_reporter(
    emit: Callable[..., None],
    *,
    total: int,
    completed: int,
    activity: ActivityRecord,
) -> Callable[[str], None]:
    def _report(stage: str) -> None:
        emit(
            stage,
            total=total,
            completed=completed,
            activity_uid=activity.uid,
            activity_title=activity.title or None,
        )

    return _report


def _accumulate_people(people_by_uid: dict[str, PersonRecord], people: list[PersonRecord]) -> list[PersonRecord]:
    touched = []
    for person in people:
        current = people_by_uid.get(person.uid)
        merged = person if current is None else fill_forward_person(current, person)
        people_by_uid[person.uid] = merged
        touched.append(merged)
    return touched


def run_collection(client: SiteClient, request: CollectRequest, publish: Publisher) -> ResultMessage:
    """Run one collection, publishing progress as it goes.

    The terminal result is returned rather than published so the caller can
    release its own bookkeeping first.
    Every message and the result carry the request id so a listener can
    tell runs apart.
    """
    emit = functools.partial(_emit, publish, request_id=request.request_id)
    try:
        logger.info("Starting collection workflow.")
        emit("fetching-activities", total=0, completed=0)
        discovery = discover_activities_url(client)
        records = fetch_activity_history(client, discovery.activities_url)
        activities = select_new_activities(
            records,
            set(request.existing_uids),
            base_url=client.base_url,
            fetch_limit=request.fetch_limit,
        )

        total = len(activities)
        logger.info("Loaded %s new activities.", total)
        if total == 0:
            emit("no-new-activities", total=0, completed=0)
        else:
            emit("activities-collected", total=total, completed=0)
            emit("processing", total=total, completed=0)

        payload = CollectorPayload(current_user_uid=discovery.current_user_uid)
        people_by_uid: dict[str, PersonRecord] = {}
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=ENRICHMENT_WORKERS,
            thread_name_prefix="enrichment",
        ) as executor:
            for index, activity in enumerate(activities):
                outcome = enrich_activity(
                    client,
                    activity,
                    executor,
                    on_stage=_stage_reporter(emit, total=total, completed=index, activity=activity),
                )
                people = _accumulate_people(people_by_uid, outcome.roster.people)
                payload.activities.append(outcome.activity)
                payload.roster_entries.extend(outcome.roster.entries)
                emit(
                    "processing",
                    total=total,
                    completed=index + 1,
                    activity_uid=activity.uid,
                    activity_title=activity.title or None,
                    delta=CollectorDelta(
                        activities=[outcome.activity],
                        people=people,
                        roster_entries=list(outcome.roster.entries),
                    ),
                )

        payload.people = list(people_by_uid.values())
        logger.info(
            "Collected %s people and %s roster entries.",
            len(payload.people),
            len(payload.roster_entries),
        )
        emit("finalizing", total=total, completed=total)
        return ResultMessage(success=True, data=payload, request_id=request.request_id)
    except HarvestError as exc:
        logger.error("Collection failed: %s", exc)
        error = str(exc)
    except Exception as exc:
        logger.exception("Collection failed unexpectedly.")
        error = str(exc) or exc.__class__.__name__

    emit("error", total=0, completed=0, error=error)
    return ResultMessage(success=False, error=error, request_id=request.request_id)


class CollectorService:
    """Collection execution context attached to a message bus.

    Collect requests are executed on a dedicated worker thread, one at a time.
    A request that arrives while a collection is running is answered at once
    with a failed result carrying that request's id. The worker pool is
    created on ``start()`` so a stopped service can be started again.
    """

    def __init__(self, bus: MessageBus, client_factory: Callable[[], SiteClient]):
        self.bus = bus
        self._client_factory = client_factory
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None
        self._guard = threading.Lock()
        self._running = False
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def started(self) -> bool:
        return self._unsubscribe is not None

    @property
    def running(self) -> bool:
        with self._guard:
            return self._running

    def start(self) -> None:
        with self._guard:
            if self._executor is None:
                self._executor = concurrent.futures.ThreadPoolExecutor(
                    max_workers=1,
                    thread_name_prefix="collector",
                )
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(self._on_message)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        with self._guard:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)

    def _on_message(self, raw: dict[str, Any]) -> None:
        try:
            message = parse_message(raw)
        except UnknownMessageError as exc:
            logger.debug("Collector ignoring message: %s", exc)
            return
        if not isinstance(message, CollectRequest):
            return

        with self._guard:
            executor = self._executor
            busy = self._running
            if executor is not None and not busy:
                self._running = True
        if executor is None:
            logger.debug("Collector is stopped; ignoring collect request.")
            return
        if busy:
            logger.warning("Collection already running; rejecting collect request %s.", message.request_id)
            self.bus.publish(ResultMessage(success=False, error=COLLECTOR_BUSY_ERROR, request_id=message.request_id))
            return
        try:
            executor.submit(self._run, message)
        except RuntimeError:
            with self._guard:
                self._running = False
            raise

    def _run(self, request: CollectRequest) -> None:
        try:
            client = self._client_factory()
            result = run_collection(client, request, self.bus.publish)
        except Exception as exc:
            logger.exception("Unable to start collection.")
            result = ResultMessage(
                success=False,
                error=str(exc) or exc.__class__.__name__,
                request_id=request.request_id,
            )
        finally:
            with self._guard:
                self._running = False
        self.bus.publish(result)
