"""Continuous camera QR scanning with permission and retry handling."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import httpx
from pydantic import ValidationError

from ..config import settings
from ..monitoring import record_scan_event
from ..schemas import ParsedQrResponse, ScanningState
from ..upi import parse_and_validate_qr
from .camera import (
    CameraDevice,
    CodeReader,
    MediaDevices,
    NotFoundException,
    OpenCVCodeReader,
    OpenCVMediaDevices,
    VideoSink,
)
from .errors import ServiceError, err_interpret_failed, err_scan_in_progress
from .http import build_client, post_json

logger = logging.getLogger("stablepay.scanner")

PERMISSION_DENIED_MESSAGE = "Please allow camera access and try again."

_REAR_KEYWORDS = ("back", "rear", "environment")
_FRONT_KEYWORDS = ("front", "user")


@dataclass(slots=True)
class QrScanningServiceConfig:
    on_qr_detected: Callable[[str, ParsedQrResponse], None]
    on_error: Callable[[str], None]
    on_state_change: Callable[[dict[str, Any]], None]


class ScanToken:
    """Cancellation flag owned by exactly one scan session."""

    __slots__ = ("cancelled",)

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class QrInterpreter(Protocol):
    async def interpret(self, qr_string: str) -> ParsedQrResponse | None:
        ...


class HttpQrInterpreter:
    """Sends scanned text to the remote interpret endpoint for server-side validation."""

    def __init__(self, url: str | None = None, client: httpx.AsyncClient | None = None):
        self.url = url or settings.interpret_url
        self.client = client or build_client()

    async def interpret(self, qr_string: str) -> ParsedQrResponse | None:
        body = await post_json(self.client, self.url, {"qrData": qr_string}, error=err_interpret_failed)
        try:
            return ParsedQrResponse.model_validate(body)
        except ValidationError as exc:
            raise err_interpret_failed("Malformed interpret response") from exc


class LocalQrInterpreter:
    """In-process interpretation for offline use."""

    async def interpret(self, qr_string: str) -> ParsedQrResponse | None:
        return parse_and_validate_qr(qr_string)


def select_camera_device(devices: list[CameraDevice]) -> CameraDevice | None:
    """Prefer a rear camera, then anything not labelled front-facing, then the first."""

    if not devices:
        return None
    for device in devices:
        label = device.label.lower()
        if any(keyword in label for keyword in _REAR_KEYWORDS):
            return device
    for device in devices:
        label = device.label.lower()
        if not any(keyword in label for keyword in _FRONT_KEYWORDS):
            return device
    return devices[0]


class QrScanningService:
    """Owns the camera and the decoder for one scan session at a time.

    Every session gets its own :class:`ScanToken`; retries and decode results check the
    token they were started with, so a stale loop from a stopped session can never touch
    the state of a newer one.
    """

    def __init__(
        self,
        config: QrScanningServiceConfig,
        *,
        media_devices: MediaDevices | None = None,
        code_reader_factory: Callable[[], CodeReader] | None = None,
        interpreter: QrInterpreter | None = None,
        retry_delay: float | None = None,
    ):
        self._config: QrScanningServiceConfig | None = config
        self.media_devices = media_devices or OpenCVMediaDevices()
        self.code_reader_factory = code_reader_factory or OpenCVCodeReader
        self.interpreter = interpreter or HttpQrInterpreter()
        self.retry_delay = retry_delay if retry_delay is not None else settings.scan_retry_delay_ms / 1000
        self._state = ScanningState()
        self._token: ScanToken | None = None
        self._code_reader: CodeReader | None = None
        self._sink: VideoSink | None = None
        self._disposed = False

    @property
    def is_active(self) -> bool:
        return self._token is not None and not self._token.cancelled

    def get_scanning_state(self) -> ScanningState:
        return self._state.model_copy()

    async def request_camera_permission(self) -> bool:
        try:
            stream = await self.media_devices.get_user_media()
        except Exception as exc:  # any failure to open the camera reads as denied
            logger.warning("camera permission denied", extra={"error": str(exc)})
            self._update_state(has_permission=False, error=PERMISSION_DENIED_MESSAGE)
            return False
        # The probe stream is never reused for decoding.
        stream.stop()
        self._update_state(has_permission=True)
        return True

    async def start_scanning(self, sink: VideoSink) -> None:
        """Scan until a code is decoded, the session is stopped, or the camera fails."""

        await self._start(sink, check_permission=True)

    def stop_scanning(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None
        self._release_reader()
        self._update_state(is_scanning=False)

    async def toggle_scanning(self, sink: VideoSink) -> None:
        if self._state.is_scanning:
            self.stop_scanning()
            return

        if self._state.has_permission is False:
            self._update_state(error=None, scan_result=None)
            if not await self.request_camera_permission():
                return
            await self._start(sink, check_permission=False)
            return

        await self._start(sink, check_permission=True)

    def reset(self) -> None:
        self.stop_scanning()
        self._update_state(scan_result=None, error=None, is_loading=False, is_scanning=False)

    async def reset_and_restart(self, sink: VideoSink | None = None) -> None:
        """Clear the last result and scan again without a new permission prompt."""

        self.reset()
        sink = sink or self._sink
        if self._state.has_permission is True and sink is not None and not self._disposed:
            await self._start(sink, check_permission=False)

    def dispose(self) -> None:
        # Listeners go first so nothing fires while the device is torn down.
        self._config = None
        self.stop_scanning()
        self._sink = None
        self._disposed = True

    async def _start(self, sink: VideoSink, *, check_permission: bool) -> None:
        if self._disposed:
            raise RuntimeError("Scanning service has been disposed")
        if sink is None:
            raise ValueError("Video sink is required for scanning")
        if self.is_active:
            raise err_scan_in_progress()

        token = ScanToken()
        self._token = token
        self._sink = sink
        self._update_state(error=None, scan_result=None, is_scanning=True)

        if check_permission and not await self.request_camera_permission():
            self._end_session(token)
            return
        if token.cancelled:
            return

        reader = self._get_code_reader()
        device = await self._find_best_camera_device(reader, token)
        if device is None or token.cancelled:
            return

        logger.info("scan started", extra={"device_label": device.label})
        await self._scan_loop(token, reader, device.device_id, sink)

    async def _scan_loop(self, token: ScanToken, reader: CodeReader, device_id: str | None, sink: VideoSink) -> None:
        while not token.cancelled:
            try:
                text = await self._decode_once(token, reader, device_id, sink)
            except NotFoundException:
                if token.cancelled:
                    return
                await asyncio.sleep(self.retry_delay)
                continue
            except Exception as exc:  # device and runtime failures end the session
                if token.cancelled:
                    return
                self._fail_session(token, reader, f"Camera error: {exc}")
                return

            if token.cancelled:
                logger.debug("decode result after stop ignored")
                return
            token.cancel()
            await self._handle_decoded(token, reader, text)
            return

    async def _decode_once(self, token: ScanToken, reader: CodeReader, device_id: str | None, sink: VideoSink) -> str:
        # Any failure of the selected camera, NotFound included, gets one automatic-selection try.
        try:
            return await reader.decode_once_from_video_device(device_id, sink)
        except Exception as exc:
            if device_id is None or token.cancelled:
                raise
            if not isinstance(exc, NotFoundException):
                logger.warning("selected camera failed, using automatic selection", extra={"error": str(exc)})
            return await reader.decode_once_from_video_device(None, sink)

    async def _handle_decoded(self, token: ScanToken, reader: CodeReader, text: str) -> None:
        if self._token is token:
            self._token = None
        if self._code_reader is reader:
            self._release_reader()
        self._update_state(scan_result=text, is_scanning=False)

        parsed = await self._interpret(text)
        if parsed is None:
            return
        record_scan_event("valid" if parsed.is_valid else "invalid")
        if self._config is not None:
            self._config.on_qr_detected(text, parsed)

    async def _interpret(self, text: str) -> ParsedQrResponse | None:
        self._update_state(is_loading=True)
        try:
            return await self.interpreter.interpret(text)
        except ServiceError as exc:
            record_scan_event("interpret_failed")
            self._notify_error(f"Failed to parse QR data: {exc.message}")
            return None
        finally:
            self._update_state(is_loading=False)

    async def _find_best_camera_device(self, reader: CodeReader, token: ScanToken) -> CameraDevice | None:
        try:
            devices = await reader.list_video_input_devices()
        except Exception as exc:  # enumeration failure is a camera error
            self._fail_session(token, reader, f"Camera error: {exc}")
            return None
        device = select_camera_device(devices)
        if device is None:
            self._fail_session(token, reader, "Camera error: No camera devices found")
        return device

    def _fail_session(self, token: ScanToken, reader: CodeReader, message: str) -> None:
        token.cancel()
        if self._token is token:
            self._token = None
        if self._code_reader is reader:
            self._release_reader()
        logger.warning("scan failed", extra={"error": message})
        record_scan_event("camera_error")
        self._update_state(error=message, is_scanning=False)
        self._notify_error(message)

    def _end_session(self, token: ScanToken) -> None:
        token.cancel()
        if self._token is token:
            self._token = None
            self._update_state(is_scanning=False)

    def _get_code_reader(self) -> CodeReader:
        if self._code_reader is None:
            self._code_reader = self.code_reader_factory()
        return self._code_reader

    def _release_reader(self) -> None:
        if self._code_reader is not None:
            self._code_reader.reset()
            self._code_reader = None

    def _update_state(self, **updates: Any) -> None:
        self._state = self._state.model_copy(update=updates)
        if self._config is not None:
            self._config.on_state_change(dict(updates))

    def _notify_error(self, message: str) -> None:
        if self._config is not None:
            self._config.on_error(message)
