"""Camera access and QR decoding backed by OpenCV."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol

import cv2

logger = logging.getLogger("stablepay.camera")

VideoSink = Callable[[Any], None]

_V4L_SYSFS = Path("/sys/class/video4linux")


class NotFoundException(Exception):
    """No code could be decoded from the frames read in one attempt."""


class CameraPermissionError(Exception):
    pass


@dataclass(frozen=True)
class CameraDevice:
    device_id: str
    label: str


class MediaStream(Protocol):
    def stop(self) -> None:
        ...


class MediaDevices(Protocol):
    async def get_user_media(self) -> MediaStream:
        ...


class CodeReader(Protocol):
    async def list_video_input_devices(self) -> list[CameraDevice]:
        ...

    async def decode_once_from_video_device(self, device_id: str | None, sink: VideoSink) -> str:
        ...

    def reset(self) -> None:
        ...


def _device_label(index: int) -> str:
    name_file = _V4L_SYSFS / f"video{index}" / "name"
    try:
        return name_file.read_text(encoding="utf-8").strip()
    except OSError:
        return f"Camera {index}"


class _CaptureStream:
    def __init__(self, capture: cv2.VideoCapture):
        self._capture = capture

    def stop(self) -> None:
        self._capture.release()


class OpenCVMediaDevices:
    """Opening a capture is the only permission probe OpenCV offers."""

    def __init__(self, index: int = 0):
        self.index = index

    async def get_user_media(self) -> MediaStream:
        capture = await asyncio.to_thread(cv2.VideoCapture, self.index)
        if not capture.isOpened():
            capture.release()
            raise CameraPermissionError("Camera unavailable or access denied")
        return _CaptureStream(capture)


class OpenCVCodeReader:
    def __init__(self, max_devices: int = 4, frames_per_attempt: int = 5):
        self.max_devices = max_devices
        self.frames_per_attempt = frames_per_attempt
        self._detector = cv2.QRCodeDetector()
        self._capture: cv2.VideoCapture | None = None
        self._capture_index: int | None = None

    async def list_video_input_devices(self) -> list[CameraDevice]:
        devices: list[CameraDevice] = []
        for index in range(self.max_devices):
            if index == self._capture_index:
                devices.append(CameraDevice(device_id=str(index), label=_device_label(index)))
                continue
            capture = await asyncio.to_thread(cv2.VideoCapture, index)
            try:
                if capture.isOpened():
                    devices.append(CameraDevice(device_id=str(index), label=_device_label(index)))
            finally:
                capture.release()
        return devices

    async def decode_once_from_video_device(self, device_id: str | None, sink: VideoSink) -> str:
        capture = await self._open(int(device_id) if device_id is not None else 0)
        for _ in range(self.frames_per_attempt):
            ok, frame = await asyncio.to_thread(capture.read)
            if not ok:
                raise RuntimeError("Failed to read frame from camera")
            sink(frame)
            text, _points, _ = self._detector.detectAndDecode(frame)
            if text:
                return text
        raise NotFoundException()

    async def _open(self, index: int) -> cv2.VideoCapture:
        if self._capture is not None and self._capture_index == index:
            return self._capture
        self.reset()
        capture = await asyncio.to_thread(cv2.VideoCapture, index)
        if not capture.isOpened():
            capture.release()
            raise RuntimeError(f"Could not open camera {index}")
        self._capture, self._capture_index = capture, index
        return capture

    def reset(self) -> None:
        if self._capture is not None:
            self._capture.release()
            logger.debug("camera released", extra={"device_index": self._capture_index})
        self._capture = None
        self._capture_index = None
