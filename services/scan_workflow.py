import asyncio
import logging
from typing import Callable, List, Sequence

from models import RawImage, ReceiptDraft, ScanSession, ScanState
from services.ocr_service import OCRService
from services.exceptions import (
    OCRError,
    RecognitionCancelledError,
    RecognitionFailedError,
    ScanInProgressError,
    ValidationError,
)

logger = logging.getLogger(__name__)

SessionObserver = Callable[[ScanSession], None]


class ScanWorkflow:
    """
    Drives a multi-page scan through the OCR service

    The current state is a single immutable ScanSession snapshot, replaced on
    every transition and pushed to subscribers. Pages are recognized one at a
    time in order; the first failing page ends the batch.
    """

    def __init__(self, ocr_service: OCRService):
        self.ocr_service = ocr_service
        self._session = ScanSession()
        self._observers: List[SessionObserver] = []
        # Bumped on every new batch and reset; stale page outcomes are dropped
        self._generation = 0

    @property
    def session(self) -> ScanSession:
        return self._session

    def subscribe(self, observer: SessionObserver) -> Callable[[], None]:
        """Register for session snapshots; returns a function that unsubscribes"""
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _publish(self, session: ScanSession):
        self._session = session
        for observer in list(self._observers):
            try:
                observer(session)
            except Exception as e:
                logger.error(f"Scan session observer failed: {str(e)}", exc_info=True)

    async def start_batch(self, pages: Sequence[RawImage]) -> ScanSession:
        """
        Recognize an ordered batch of pages

        Args:
            pages: Captured pages in page order

        Returns:
            The session snapshot when the batch ends (Completed or Failed),
            or an Idle snapshot when the batch was reset while running

        Raises:
            ScanInProgressError: Another batch is still processing
            ValidationError: The batch is empty
        """
        if self._session.is_processing:
            raise ScanInProgressError(
                f"{len(self._session.results)} of {len(self._session.pages)} pages done"
            )
        if not pages:
            raise ValidationError("No pages to scan", "A batch needs at least one page")

        self._generation += 1
        generation = self._generation

        logger.info(f"Starting scan batch of {len(pages)} pages")
        session = ScanSession(pages=tuple(pages), state=ScanState.PROCESSING)
        self._publish(session)

        for index, page in enumerate(pages, start=1):
            try:
                result = await self.ocr_service.recognize_text(page)
            except OCRError as e:
                if generation != self._generation:
                    logger.info(f"Dropping failure of page {index} from a reset batch")
                    return ScanSession()

                logger.warning(f"Page {index} failed, stopping batch: {e.message}")
                session = session.model_copy(
                    update={"state": ScanState.FAILED, "error": e}
                )
                self._publish(session)
                return session
            except asyncio.CancelledError:
                if generation == self._generation:
                    logger.warning(f"Scan batch cancelled on page {index}")
                    self._publish(
                        session.model_copy(
                            update={
                                "state": ScanState.FAILED,
                                "error": RecognitionCancelledError(
                                    f"Cancelled while recognizing page {index}"
                                ),
                            }
                        )
                    )
                raise
            except Exception as e:
                if generation == self._generation:
                    logger.error(f"Page {index} raised unexpectedly: {str(e)}", exc_info=True)
                    self._publish(
                        session.model_copy(
                            update={
                                "state": ScanState.FAILED,
                                "error": RecognitionFailedError(e),
                            }
                        )
                    )
                raise

            if generation != self._generation:
                logger.info(f"Dropping result of page {index} from a reset batch")
                return ScanSession()

            session = session.model_copy(update={"results": session.results + (result,)})
            self._publish(session)

        logger.info(
            f"Scan batch completed: {len(pages)} pages, "
            f"{session.total_lines_recognized} lines"
        )
        session = session.model_copy(update={"state": ScanState.COMPLETED})
        self._publish(session)
        return session

    def reset(self) -> ScanSession:
        """Discard pages and results and return to Idle, from any state"""
        self._generation += 1
        self._publish(ScanSession())
        return self._session

    def build_receipt_draft(self) -> ReceiptDraft:
        """Package a completed session for storage"""
        session = self._session
        if session.state != ScanState.COMPLETED:
            raise ValidationError(
                "Scan is not complete",
                f"Cannot build a receipt from a {session.state.value} session",
            )

        return ReceiptDraft(
            raw_text=session.raw_text,
            page_count=len(session.pages),
            line_count=session.total_lines_recognized,
        )
