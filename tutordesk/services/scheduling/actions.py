"""Save/delete lesson actions that keep the range cache coherent.

The cache is only touched after the store confirms a write; a failed write
leaves every cached range exactly as it was.
"""

from tutordesk.common.errors import InvalidInput, MutationError, NotFound
from tutordesk.common.logging import logger
from tutordesk.services.scheduling.range_cache import RangeCache
from tutordesk.services.scheduling.recurrence import RecurrenceEngine
from tutordesk.services.scheduling.schemas import (
    DecisionRequired,
    DeleteKind,
    DeleteResult,
    EditKind,
    LessonDraft,
    LessonView,
    SeriesScope,
    UpdateResult,
    validate_draft,
)


class LessonActions:
    def __init__(self, store, cache: RangeCache, recurrence: RecurrenceEngine) -> None:
        self.store = store
        self.cache = cache
        self.recurrence = recurrence

    async def save_lesson(
        self,
        draft: LessonDraft,
        lesson: LessonView | None = None,
        scope: SeriesScope = SeriesScope.ASK,
    ) -> UpdateResult | DecisionRequired:
        """Create `draft`, or apply it to `lesson` under the chosen series scope.

        An ambiguous series edit returns `DecisionRequired` before any call
        to the store.
        """

        validated = validate_draft(draft)

        if lesson is None:
            try:
                if validated.is_recurring:
                    lessons = await self.store.create_recurring_lessons(draft)
                else:
                    lessons = [await self.store.create_lesson(draft)]
            except (InvalidInput, NotFound):
                raise
            except Exception as exc:
                logger.error("lesson_save_failed action=create error=%r", exc)
                raise MutationError("failed to create lesson") from exc
            self.cache.sync_across_ranges(lessons)
            return UpdateResult(lessons=lessons, series_id=lessons[0].series_id if lessons else None)

        plan = self.recurrence.resolve_edit(lesson, validated, scope)
        if isinstance(plan, DecisionRequired):
            return plan
        if plan.kind == EditKind.APPLY_TO_SERIES:
            scope = SeriesScope.SERIES
        elif plan.kind == EditKind.DETACH:
            scope = SeriesScope.SINGLE

        try:
            result = await self.store.update_lesson(lesson.id, draft, scope)
        except (InvalidInput, NotFound):
            raise
        except Exception as exc:
            logger.error("lesson_save_failed action=update lesson_id=%s error=%r", lesson.id, exc)
            raise MutationError(f"failed to update lesson {lesson.id}") from exc
        if isinstance(result, DecisionRequired):
            return result

        if result.plan == EditKind.APPLY_TO_SERIES and result.series_id:
            self.cache.remove_across_ranges(series_id=result.series_id, start_from=result.start_from)
        self.cache.remove_across_ranges(ids=result.removed_ids)
        self.cache.sync_across_ranges(result.lessons)
        return result

    async def delete_lesson(
        self,
        lesson: LessonView,
        scope: SeriesScope = SeriesScope.ASK,
    ) -> DeleteResult | DecisionRequired:
        plan = self.recurrence.resolve_delete(lesson, scope)
        if isinstance(plan, DecisionRequired):
            return plan
        scope = SeriesScope.SERIES if plan.kind == DeleteKind.SERIES else SeriesScope.SINGLE

        try:
            result = await self.store.delete_lesson(lesson.id, scope)
        except (InvalidInput, NotFound):
            raise
        except Exception as exc:
            logger.error("lesson_delete_failed lesson_id=%s error=%r", lesson.id, exc)
            raise MutationError(f"failed to delete lesson {lesson.id}") from exc
        if isinstance(result, DecisionRequired):
            return result

        if result.kind == DeleteKind.SERIES:
            self.cache.remove_across_ranges(series_id=result.series_id, start_from=result.start_from)
        self.cache.remove_across_ranges(ids=result.deleted_ids)
        return result
