"""
Summary generation and the summary history of each user.

``SummaryService.generate`` is the only place where AI work and credits meet:

* nothing is written when the user cannot afford the summary,
* a COMPLETED summary for the same video is handed back without a charge,
* the provisional PROCESSING row and the debit are committed together,
* if the AI call fails the row is flipped to FAILED and the credit refunded in
  one transaction before the error is re-raised,
* a row removed while the AI call runs is refunded, never left charged.
"""

import datetime
import logging
import math
from typing import List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import Settings
from credits import CreditLedger
from errors import ConflictError, InsufficientCreditsError, NotFoundError
from models import Summary, SummaryStatus, User
from schemas import (
    GenerateSummaryRequest,
    PaginatedSummaries,
    Pagination,
    SaveSummaryRequest,
    SummaryOut,
    SummaryQuery,
    SummaryStats,
    SummaryVideoMetadata,
    TranscriptSegment,
    UpdateSummaryRequest,
)

logger = logging.getLogger(__name__)

_SORT_COLUMNS = {
    "createdAt": Summary.created_at,
    "title": Summary.title,
    "videoTitle": Summary.video_title,
}


def transcript_to_text(transcript: List[TranscriptSegment]) -> str:
    return " ".join(segment.text for segment in transcript)


def start_of_month(now: Optional[datetime.datetime] = None) -> datetime.datetime:
    now = now or datetime.datetime.utcnow()
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def to_summary_out(summary: Summary) -> SummaryOut:
    return SummaryOut(
        id=summary.id,
        title=summary.title,
        key_points=summary.key_points or [],
        full_summary=summary.full_summary or "",
        tags=summary.tags or [],
        status=summary.status,
        video_metadata=SummaryVideoMetadata(
            video_id=summary.video_id,
            title=summary.video_title,
            channel_name=summary.channel_name,
            duration=summary.video_duration,
            url=summary.video_url,
            thumbnail_url=summary.thumbnail_url,
        ),
        transcript=summary.transcript,
        transcript_text=summary.transcript_text,
        created_at=summary.created_at,
        updated_at=summary.updated_at,
    )


class SummaryService:
    def __init__(self, session_factory: sessionmaker, ledger: CreditLedger, summarizer, settings: Settings):
        self.session_factory = session_factory
        self.ledger = ledger
        self.summarizer = summarizer
        self.settings = settings

    # --- Generation -----------------------------------------------------------

    def generate(self, user_id: str, request: GenerateSummaryRequest) -> SummaryOut:
        cost = self.settings.credits_per_summary
        metadata = request.video_metadata

        with self.session_factory() as db:
            user = db.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found", code="USER_NOT_FOUND")
            if user.credits < cost:
                raise InsufficientCreditsError(credits_needed=cost)

            existing = self._find_completed(db, user_id, metadata.video_id)
            if existing is not None:
                logger.info(
                    "Returning existing summary",
                    extra={"user_id": user_id, "summary_id": existing.id, "video_id": metadata.video_id},
                )
                return to_summary_out(existing)

        # The provisional row only exists if the debit succeeded
        with self.session_factory.begin() as db:
            summary = Summary(
                title=metadata.title,
                key_points=[],
                full_summary="",
                tags=[],
                status=SummaryStatus.PROCESSING,
                video_id=metadata.video_id,
                video_title=metadata.title,
                channel_name=metadata.channel_name,
                video_duration=metadata.duration,
                video_url=metadata.url,
                thumbnail_url=metadata.thumbnail_url,
                transcript=[segment.model_dump(by_alias=True, exclude_none=True) for segment in request.transcript],
                transcript_text=transcript_to_text(request.transcript),
                user_id=user_id,
            )
            db.add(summary)
            db.flush()
            self.ledger.debit(db, user_id, cost)
            summary_id = summary.id

        logger.info(
            "Summary generation started",
            extra={"user_id": user_id, "summary_id": summary_id, "video_id": metadata.video_id},
        )

        try:
            payload = self.summarizer.summarize(request.transcript, metadata)
        except Exception:
            self._mark_failed_and_refund(summary_id, user_id, cost)
            raise

        try:
            with self.session_factory.begin() as db:
                result = db.execute(
                    update(Summary)
                    .where(Summary.id == summary_id, Summary.status == SummaryStatus.PROCESSING)
                    .values(
                        key_points=list(payload.key_points),
                        full_summary=payload.full_summary,
                        tags=list(payload.tags),
                        status=SummaryStatus.COMPLETED,
                    )
                    .execution_options(synchronize_session=False)
                )
                completed = to_summary_out(db.get(Summary, summary_id)) if result.rowcount == 1 else None
        except IntegrityError:
            # Another request completed the same video first
            canonical = self._discard_duplicate(summary_id, user_id, metadata.video_id, cost)
            if canonical is not None:
                return canonical
            self._mark_failed_and_refund(summary_id, user_id, cost)
            raise
        except Exception:
            self._mark_failed_and_refund(summary_id, user_id, cost)
            raise

        if completed is None:
            # The provisional row was removed while the AI call was running
            self._refund_removed(summary_id, user_id, cost)
            raise ConflictError("Summary was removed before generation finished", code="SUMMARY_REMOVED")

        logger.info(
            "Summary generated successfully",
            extra={"user_id": user_id, "summary_id": summary_id, "video_id": metadata.video_id},
        )
        return completed

    def _refund_removed(self, summary_id: str, user_id: str, cost: int) -> None:
        try:
            with self.session_factory.begin() as db:
                self.ledger.credit(db, user_id, cost)
        except NotFoundError:
            # The account itself is gone
            logger.warning("No account to refund", extra={"user_id": user_id, "summary_id": summary_id})
            return
        logger.warning(
            "Summary removed during generation, credits refunded",
            extra={"user_id": user_id, "summary_id": summary_id, "amount": cost},
        )

    def _mark_failed_and_refund(self, summary_id: str, user_id: str, cost: int) -> None:
        try:
            with self.session_factory.begin() as db:
                db.execute(
                    update(Summary).where(Summary.id == summary_id).values(status=SummaryStatus.FAILED)
                )
                self.ledger.credit(db, user_id, cost)
        except (SQLAlchemyError, NotFoundError):
            logger.exception(
                "Could not refund failed summary",
                extra={"user_id": user_id, "summary_id": summary_id, "amount": cost},
            )
            return
        logger.warning(
            "Summary generation failed, credits refunded",
            extra={"user_id": user_id, "summary_id": summary_id, "amount": cost},
        )

    def _discard_duplicate(self, summary_id: str, user_id: str, video_id: str, cost: int) -> Optional[SummaryOut]:
        with self.session_factory.begin() as db:
            canonical = self._find_completed(db, user_id, video_id)
            if canonical is None:
                return None
            result = to_summary_out(canonical)
            db.execute(delete(Summary).where(Summary.id == summary_id))
            self.ledger.credit(db, user_id, cost)
        logger.warning(
            "Concurrent summary for the same video, duplicate discarded and refunded",
            extra={"user_id": user_id, "summary_id": result.id, "video_id": video_id},
        )
        return result

    @staticmethod
    def _find_completed(db: Session, user_id: str, video_id: str) -> Optional[Summary]:
        return db.scalars(
            select(Summary)
            .where(
                Summary.user_id == user_id,
                Summary.video_id == video_id,
                Summary.status == SummaryStatus.COMPLETED,
            )
            .order_by(Summary.created_at.desc())
            .limit(1)
        ).first()

    @staticmethod
    def _get_owned(db: Session, user_id: str, summary_id: str) -> Summary:
        summary = db.scalars(
            select(Summary).where(Summary.id == summary_id, Summary.user_id == user_id)
        ).first()
        if summary is None:
            raise NotFoundError("Summary not found", code="SUMMARY_NOT_FOUND")
        return summary

    @staticmethod
    def _ensure_settled(summary: Summary) -> None:
        if summary.status == SummaryStatus.PROCESSING:
            raise ConflictError("Summary is still being generated", code="SUMMARY_PROCESSING")

    # --- History --------------------------------------------------------------

    def save(self, user_id: str, request: SaveSummaryRequest) -> SummaryOut:
        """Store a client-provided summary. No AI call, no credits."""
        metadata = request.video_metadata
        with self.session_factory() as db:
            if request.id:
                summary = self._get_owned(db, user_id, request.id)
                self._ensure_settled(summary)
            else:
                summary = self._find_completed(db, user_id, metadata.video_id)

            if summary is None:
                summary = Summary(user_id=user_id, status=SummaryStatus.COMPLETED)
                db.add(summary)

            summary.status = SummaryStatus.COMPLETED
            summary.title = request.title
            summary.key_points = list(request.key_points)
            summary.full_summary = request.full_summary
            summary.tags = list(request.tags)
            summary.video_id = metadata.video_id
            summary.video_title = metadata.title
            summary.channel_name = metadata.channel_name
            summary.video_duration = metadata.duration
            summary.video_url = metadata.url
            summary.thumbnail_url = metadata.thumbnail_url
            if request.transcript is not None:
                summary.transcript = [
                    segment.model_dump(by_alias=True, exclude_none=True) for segment in request.transcript
                ]
                summary.transcript_text = request.transcript_text or transcript_to_text(request.transcript)
            elif request.transcript_text is not None:
                summary.transcript_text = request.transcript_text

            db.commit()
            db.refresh(summary)
            logger.info(
                "Summary saved",
                extra={"user_id": user_id, "summary_id": summary.id, "video_id": summary.video_id},
            )
            return to_summary_out(summary)

    def list(self, user_id: str, query: SummaryQuery) -> PaginatedSummaries:
        stmt = select(Summary).where(Summary.user_id == user_id)
        if query.status is not None:
            stmt = stmt.where(Summary.status == query.status)
        if query.video_id:
            stmt = stmt.where(Summary.video_id == query.video_id)
        if query.start_date is not None:
            stmt = stmt.where(Summary.created_at >= query.start_date)
        if query.end_date is not None:
            stmt = stmt.where(Summary.created_at <= query.end_date)
        if query.search:
            pattern = f"%{query.search}%"
            stmt = stmt.where(
                or_(
                    Summary.title.ilike(pattern),
                    Summary.video_title.ilike(pattern),
                    Summary.channel_name.ilike(pattern),
                    Summary.full_summary.ilike(pattern),
                )
            )

        column = _SORT_COLUMNS[query.sort_by]
        order = column.asc() if query.sort_order == "asc" else column.desc()

        with self.session_factory() as db:
            total = db.scalar(select(func.count()).select_from(stmt.subquery()))
            rows = db.scalars(
                stmt.order_by(order, Summary.id)
                .offset((query.page - 1) * query.limit)
                .limit(query.limit)
            ).all()
            data = [to_summary_out(row) for row in rows]

        total_pages = math.ceil(total / query.limit) if total else 0
        return PaginatedSummaries(
            data=data,
            pagination=Pagination(
                page=query.page,
                limit=query.limit,
                total=total,
                total_pages=total_pages,
                has_next=query.page < total_pages,
                has_prev=query.page > 1,
            ),
        )

    def get(self, user_id: str, summary_id: str) -> SummaryOut:
        with self.session_factory() as db:
            return to_summary_out(self._get_owned(db, user_id, summary_id))

    def update(self, user_id: str, summary_id: str, request: UpdateSummaryRequest) -> SummaryOut:
        changes = request.model_dump(exclude_none=True)
        with self.session_factory() as db:
            summary = self._get_owned(db, user_id, summary_id)
            for field, value in changes.items():
                setattr(summary, field, value)
            db.commit()
            db.refresh(summary)
            logger.info(
                "Summary updated",
                extra={"user_id": user_id, "summary_id": summary_id, "fields": sorted(changes)},
            )
            return to_summary_out(summary)

    def delete(self, user_id: str, summary_id: str) -> None:
        with self.session_factory() as db:
            summary = self._get_owned(db, user_id, summary_id)
            self._ensure_settled(summary)
            db.delete(summary)
            db.commit()
        logger.info("Summary deleted", extra={"user_id": user_id, "summary_id": summary_id})

    def get_by_video(self, user_id: str, video_id: str) -> Optional[SummaryOut]:
        with self.session_factory() as db:
            summary = self._find_completed(db, user_id, video_id)
            return to_summary_out(summary) if summary is not None else None

    def stats(self, user_id: str) -> SummaryStats:
        owned = Summary.user_id == user_id
        with self.session_factory() as db:
            total = db.scalar(select(func.count(Summary.id)).where(owned))
            this_month = db.scalar(
                select(func.count(Summary.id)).where(owned, Summary.created_at >= start_of_month())
            )
            completed = db.scalar(
                select(func.count(Summary.id)).where(owned, Summary.status == SummaryStatus.COMPLETED)
            )
            failed = db.scalar(
                select(func.count(Summary.id)).where(owned, Summary.status == SummaryStatus.FAILED)
            )
            average = db.scalar(
                select(func.avg(func.length(Summary.full_summary))).where(
                    owned, Summary.status == SummaryStatus.COMPLETED
                )
            )

        return SummaryStats(
            total_summaries=total,
            summaries_this_month=this_month,
            completed_summaries=completed,
            failed_summaries=failed,
            average_summary_length=int(round(average)) if average is not None else 0,
        )

    # --- Retention ------------------------------------------------------------

    def cleanup_old_summaries(self) -> int:
        """Trim every user's history to ``max_summary_history``, oldest first.

        Rows still being generated are neither counted nor removed.
        """
        cap = self.settings.max_summary_history
        settled = Summary.status != SummaryStatus.PROCESSING
        deleted = 0
        with self.session_factory.begin() as db:
            over_cap = db.execute(
                select(Summary.user_id, func.count(Summary.id))
                .where(settled)
                .group_by(Summary.user_id)
                .having(func.count(Summary.id) > cap)
            ).all()

            for owner_id, count in over_cap:
                stale_ids = db.scalars(
                    select(Summary.id)
                    .where(Summary.user_id == owner_id, settled)
                    .order_by(Summary.created_at.asc(), Summary.id.asc())
                    .limit(count - cap)
                ).all()
                db.execute(delete(Summary).where(Summary.id.in_(stale_ids)))
                deleted += len(stale_ids)
                logger.info(
                    "Old summaries cleaned up",
                    extra={"user_id": owner_id, "deleted_count": len(stale_ids)},
                )
        return deleted
