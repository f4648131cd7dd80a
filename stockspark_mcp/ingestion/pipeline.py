"""Batch image ingestion: normalize each descriptor and upload it to a vehicle gallery.

One bad image never sinks the batch. Every item ends up as an
``UploadOutcome`` in the report, in request order. A token that cannot be
obtained before the first upload aborts the whole batch with ``AuthFailure``.
Credentials rejected mid-batch stop the remaining items instead and the
report comes back ``fatal`` with whatever already completed.

The main image is flagged with a gallery update once the uploads are done,
so concurrent uploads never race the vehicle read-modify-write.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from stockspark_mcp.clients.errors import AuthFailure, StockSparkError
from stockspark_mcp.clients.stockspark import StockSparkClient
from stockspark_mcp.constants import DEFAULT_UPLOAD_CONCURRENCY, MAX_IMAGES_PER_BATCH
from stockspark_mcp.ingestion.descriptors import (
    ImageDescriptor,
    ImageInputError,
    NormalizedImage,
    SourceKind,
    UnsupportedSource,
    normalize_descriptor,
    parse_image_input,
)

logger = logging.getLogger(__name__)

Parser = Callable[[Any, int], ImageDescriptor]
Preparer = tuple[str, Callable[[], Awaitable[NormalizedImage]]]


# ── Results ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UploadOutcome:
    """Result for one requested image. Exactly one of image_id / error is set."""

    index: int
    filename: str
    main: bool = False
    image_id: str | None = None
    error: str | None = None
    kind: str | None = None
    code: str | None = None
    status: int | None = None
    details: dict[str, Any] = field(default_factory=dict)
    main_error: str | None = None

    def __post_init__(self) -> None:
        if (self.image_id is None) == (self.error is None):
            raise ValueError("UploadOutcome needs exactly one of image_id or error")

    @property
    def succeeded(self) -> bool:
        return self.image_id is not None

    @classmethod
    def failed(cls, index: int, filename: str, main: bool, exc: Exception) -> UploadOutcome:
        status = getattr(exc, "status", None)
        details = getattr(exc, "details", None)
        return cls(
            index=index,
            filename=filename,
            main=main,
            error=str(exc) or type(exc).__name__,
            kind=getattr(exc, "kind", type(exc).__name__),
            code=getattr(exc, "code", None),
            status=status if isinstance(status, int) else None,
            details=dict(details) if isinstance(details, dict) else {},
        )

    def to_dict(self) -> dict[str, Any]:
        if self.succeeded:
            payload: dict[str, Any] = {
                "index": self.index,
                "filename": self.filename,
                "imageId": self.image_id,
                "main": self.main,
            }
            if self.main_error:
                payload["mainError"] = self.main_error
            return payload
        payload = {
            "index": self.index,
            "filename": self.filename,
            "kind": self.kind,
            "error": self.error,
            "main": self.main,
        }
        if self.code:
            payload["code"] = self.code
        if self.status is not None:
            payload["status"] = self.status
        if self.details:
            payload["details"] = self.details
        return payload


@dataclass(frozen=True)
class UploadReport:
    vehicle_id: int
    outcomes: tuple[UploadOutcome, ...]
    requested: int
    main_index: int | None = None
    partial: bool = False
    fatal: bool = False

    @property
    def uploaded(self) -> list[UploadOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def failures(self) -> list[UploadOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    @property
    def uploaded_count(self) -> int:
        return len(self.uploaded)

    @property
    def success(self) -> bool:
        """At least one upload landed and the designated main image is uploaded and flagged."""
        if self.fatal or not self.uploaded:
            return False
        if self.main_index is None:
            return True
        return any(
            o.index == self.main_index and o.main_error is None for o in self.uploaded
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "fatal": self.fatal,
            "vehicleId": self.vehicle_id,
            "requestedCount": self.requested,
            "uploadedCount": self.uploaded_count,
            "uploadedImages": [o.to_dict() for o in self.uploaded],
            "errors": [o.to_dict() for o in self.failures],
            "partial": self.partial,
        }


# ── Pipeline ────────────────────────────────────────────────────────


class MediaIngestionPipeline:
    """Uploads a batch of image descriptors to one vehicle with bounded fan-out."""

    def __init__(
        self,
        client: StockSparkClient,
        *,
        max_concurrency: int = DEFAULT_UPLOAD_CONCURRENCY,
        max_images: int = MAX_IMAGES_PER_BATCH,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.client = client
        self.max_concurrency = max_concurrency
        self.max_images = max_images

    async def upload_batch(
        self,
        vehicle_id: int,
        descriptors: Sequence[ImageDescriptor],
        main_index: int | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> UploadReport:
        """Upload already-typed descriptors."""
        preparers = [
            _bind_normalize(descriptor, index) for index, descriptor in enumerate(descriptors)
        ]
        return await self._run(
            vehicle_id,
            preparers,
            main_index,
            cancel_event=cancel_event,
            timeout=timeout,
        )

    async def upload_inputs(
        self,
        vehicle_id: int,
        raw_items: Sequence[Any],
        main_index: int | None = None,
        *,
        parse: Parser = parse_image_input,
        cancel_event: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> UploadReport:
        """Upload loose tool input; items that fail to parse are reported per item."""
        preparers = [_bind_parse(parse, raw, index) for index, raw in enumerate(raw_items)]
        return await self._run(
            vehicle_id,
            preparers,
            main_index,
            cancel_event=cancel_event,
            timeout=timeout,
        )

    def _check_batch(self, count: int, main_index: int | None) -> int | None:
        if count == 0:
            raise ValueError("At least one image is required.")
        if count > self.max_images:
            raise ValueError(
                f"Too many images: {count} requested, maximum is {self.max_images} per upload."
            )
        if main_index is None or main_index == -1:
            return None
        if not 0 <= main_index < count:
            raise ValueError(
                f"Invalid main image index {main_index}: must be -1 (none) "
                f"or between 0 and {count - 1}."
            )
        return main_index

    async def _run(
        self,
        vehicle_id: int,
        preparers: list[Preparer],
        main_index: int | None,
        *,
        cancel_event: asyncio.Event | None,
        timeout: float | None,
    ) -> UploadReport:
        main = self._check_batch(len(preparers), main_index)

        # Batch-fatal: raises AuthFailure before any upload is issued.
        await self.client.credentials.get_credential()

        semaphore = asyncio.Semaphore(self.max_concurrency)
        halted = asyncio.Event()

        async def _process(
            index: int,
            label: str,
            prepare: Callable[[], Awaitable[NormalizedImage]],
        ) -> UploadOutcome | None:
            is_main = index == main
            async with semaphore:
                if halted.is_set():
                    return None
                try:
                    image = await prepare()
                except ImageInputError as exc:
                    logger.info("Image %d rejected: %s", index, exc)
                    return UploadOutcome.failed(index, label, is_main, exc)
                except Exception as exc:
                    logger.exception("Unexpected error preparing image %d (%s)", index, label)
                    return UploadOutcome.failed(index, label, is_main, exc)

                try:
                    image_id = await self._upload(vehicle_id, image)
                except AuthFailure as exc:
                    logger.error(
                        "Credentials rejected uploading image %d; stopping batch: %s", index, exc
                    )
                    halted.set()
                    return UploadOutcome.failed(index, image.filename, is_main, exc)
                except (ImageInputError, StockSparkError) as exc:
                    logger.warning("Upload of image %d (%s) failed: %s", index, image.filename, exc)
                    return UploadOutcome.failed(index, image.filename, is_main, exc)
                except Exception as exc:
                    logger.exception("Unexpected error uploading image %d (%s)", index, image.filename)
                    return UploadOutcome.failed(index, image.filename, is_main, exc)

            if image_id is None:
                return UploadOutcome(
                    index=index,
                    filename=image.filename,
                    main=is_main,
                    error="Upload response did not include an image id.",
                    kind="RemoteRequestFailure",
                    code="MISSING_IMAGE_ID",
                )
            return UploadOutcome(index=index, filename=image.filename, main=is_main, image_id=image_id)

        tasks = [
            asyncio.create_task(_process(index, label, prepare))
            for index, (label, prepare) in enumerate(preparers)
        ]
        stop_events = [halted] if cancel_event is None else [halted, cancel_event]
        outcomes = await self._collect(tasks, stop_events=stop_events, timeout=timeout)
        outcomes.sort(key=lambda o: o.index)
        partial = len(outcomes) < len(preparers)

        if main is not None:
            outcomes = await self._flag_main(
                vehicle_id, outcomes, main, stopped=partial or halted.is_set()
            )

        report = UploadReport(
            vehicle_id=vehicle_id,
            outcomes=tuple(outcomes),
            requested=len(preparers),
            main_index=main,
            partial=partial,
            fatal=halted.is_set(),
        )
        logger.info(
            "Uploaded %d/%d images to vehicle %s%s%s",
            report.uploaded_count,
            report.requested,
            vehicle_id,
            " (partial)" if partial else "",
            " (credentials rejected)" if report.fatal else "",
        )
        return report

    async def _collect(
        self,
        tasks: list[asyncio.Task[UploadOutcome | None]],
        *,
        stop_events: Sequence[asyncio.Event],
        timeout: float | None,
    ) -> list[UploadOutcome]:
        """Gather outcomes until every task finishes, a stop event fires or time runs out."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        waiters = {asyncio.create_task(event.wait()) for event in stop_events}

        outcomes: list[UploadOutcome] = []
        pending: set[asyncio.Task[Any]] = set(tasks)
        try:
            while pending:
                remaining = None if deadline is None else max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    pending | waiters,
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done - waiters:
                    pending.discard(task)
                    outcome = task.result()
                    if outcome is not None:
                        outcomes.append(outcome)
                if not done or any(waiter.done() for waiter in waiters):
                    if pending:
                        logger.warning(
                            "Upload batch stopped early; %d image(s) not completed",
                            len(pending),
                        )
                    break
        finally:
            leftovers = [*pending, *waiters]
            for task in leftovers:
                task.cancel()
            await asyncio.gather(*leftovers, return_exceptions=True)
        return outcomes

    async def _flag_main(
        self,
        vehicle_id: int,
        outcomes: list[UploadOutcome],
        main: int,
        *,
        stopped: bool,
    ) -> list[UploadOutcome]:
        position = next((i for i, o in enumerate(outcomes) if o.index == main), None)
        if position is None or not outcomes[position].succeeded:
            return outcomes

        outcome = outcomes[position]
        if stopped:
            main_error = "Upload batch stopped before the main image was set."
        else:
            try:
                await self.client.set_main_image(vehicle_id, outcome.image_id)
                return outcomes
            except (StockSparkError, ValueError) as exc:
                logger.warning(
                    "Could not set image %s as main for vehicle %s: %s",
                    outcome.image_id,
                    vehicle_id,
                    exc,
                )
                main_error = str(exc) or type(exc).__name__

        outcomes[position] = replace(outcome, main_error=main_error)
        return outcomes

    async def _upload(self, vehicle_id: int, image: NormalizedImage) -> str | None:
        if image.kind is SourceKind.URL and image.url:
            return await self.client.upload_gallery_image_from_url(vehicle_id, image.url)
        if image.kind is not SourceKind.URL and image.content is not None:
            return await self.client.upload_gallery_image(
                vehicle_id,
                image.content,
                filename=image.filename,
                media_type=image.media_type,
            )
        raise UnsupportedSource(f"Nothing to upload for {image.filename}")


def _describe(item: Any, index: int) -> str:
    if isinstance(item, str) and item.strip():
        return item.strip()
    for attr in ("filename", "url", "path"):
        value = getattr(item, attr, None)
        if isinstance(value, str) and value:
            return value
    if isinstance(item, Mapping):
        for key in ("filename", "name", "uri", "url", "path"):
            value = item.get(key)
            if isinstance(value, str) and value:
                return value
    return f"input_{index}"


def _bind_normalize(descriptor: ImageDescriptor, index: int) -> Preparer:
    async def prepare() -> NormalizedImage:
        return await normalize_descriptor(descriptor, index)

    return _describe(descriptor, index), prepare


def _bind_parse(parse: Parser, raw: Any, index: int) -> Preparer:
    async def prepare() -> NormalizedImage:
        return await normalize_descriptor(parse(raw, index), index)

    return _describe(raw, index), prepare
