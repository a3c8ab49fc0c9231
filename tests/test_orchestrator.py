from __future__ import annotations

import os
import stat
import sys
import tempfile
import threading
import time
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from PIL import Image

from fileconvert import formats
from fileconvert.config import Settings
from fileconvert.errors import (
    ConversionError,
    JobStateError,
    NotFoundError,
    UnsupportedConversionError,
    ValidationError,
)
from fileconvert.models import JobStatus
from fileconvert.orchestrator import ConversionService

SLOW_FFMPEG = """#!{python}
import sys, time
sys.stderr.write("  Duration: 00:01:40.00, start: 0.000000, bitrate: 100 kb/s\\n")
sys.stderr.flush()
for second in range(1, 100):
    sys.stderr.write("frame=%d time=00:00:%02d.00 bitrate=1.0kbits/s\\n" % (second, second))
    sys.stderr.flush()
    time.sleep(0.2)
"""


def wait_until(predicate, timeout: float = 10.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class ConversionServiceTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.settings = Settings.for_workspace(Path(self.temp_dir.name) / "workspace", max_workers=2)
        self.release = threading.Event()
        self.service = ConversionService(self.settings)
        self.events = []
        self.service.broadcaster.subscribe(self.events.append)

    def tearDown(self) -> None:
        self.release.set()
        self.service.shutdown()
        self.service.executor.shutdown(wait=True)
        self.temp_dir.cleanup()

    def _upload_png(self, name: str = "sample.png") -> Path:
        path = self.settings.upload_dir / name
        Image.new("RGB", (16, 16), "green").save(path)
        return path

    def _blocking_converter(self, input_path, output_format, output_dir, options=None, progress_cb=None, runner=None):
        progress_cb(30)
        self.release.wait(10)
        output_dir.mkdir(parents=True, exist_ok=True)
        output = output_dir / f"{input_path.stem}.{output_format}"
        output.write_bytes(b"late output")
        return output

    def test_png_to_webp_completes_and_removes_input(self) -> None:
        source = self._upload_png()

        job = self.service.start_conversion(str(source), "webp", original_filename="sample.png")
        self.assertEqual(job.status, JobStatus.PROCESSING)
        self.service.wait(job.job_id, timeout=10)

        done = self.service.get_job(job.job_id)
        self.assertEqual(done.status, JobStatus.COMPLETED)
        self.assertEqual(done.progress, 100)
        self.assertEqual(done.output_format, "webp")
        self.assertEqual(done.original_filename, "sample.png")
        self.assertTrue(done.output_path.exists())
        self.assertEqual(formats.content_type_for(done.output_path), "image/webp")
        self.assertFalse(source.exists())

        progress = [e.progress for e in self.events if e.to_dict()["event"] == "progress"]
        self.assertEqual(progress, sorted(progress))
        self.assertEqual(self.events[-1].to_dict(), {"event": "status", "jobId": job.job_id, "status": "completed"})

    def test_job_ids_are_fresh(self) -> None:
        ids = {self.service.start_conversion(str(self._upload_png(f"s{i}.png")), "jpg").job_id for i in range(5)}
        self.assertEqual(len(ids), 5)

    def test_unsupported_pair_creates_no_job(self) -> None:
        gif = self.settings.upload_dir / "anim.gif"
        Image.new("P", (4, 4)).save(gif)

        with self.assertRaises(UnsupportedConversionError) as ctx:
            self.service.start_conversion(str(gif), "docx")

        self.assertEqual(ctx.exception.supported_formats, formats.supported_output_formats("gif"))
        self.assertEqual(len(self.service.registry), 0)
        self.assertTrue(gif.exists())

    def test_request_validation(self) -> None:
        with self.assertRaises(ValidationError):
            self.service.start_conversion(None, "png")
        with self.assertRaises(NotFoundError):
            self.service.start_conversion(str(self.settings.upload_dir / "missing.png"), "webp")
        outside = Path(self.temp_dir.name) / "elsewhere.png"
        Image.new("RGB", (2, 2)).save(outside)
        with self.assertRaises(ValidationError):
            self.service.start_conversion(str(outside), "webp")

    def test_converter_failure_marks_job_failed(self) -> None:
        def broken(*args, **kwargs):
            raise ConversionError("FFmpeg exited with code 1: boom")

        self.service.converters[formats.IMAGE] = broken
        source = self._upload_png()

        job = self.service.start_conversion(str(source), "webp")
        self.service.wait(job.job_id, timeout=10)

        failed = self.service.get_job(job.job_id)
        self.assertEqual(failed.status, JobStatus.FAILED)
        self.assertEqual(failed.error, "FFmpeg exited with code 1: boom")
        self.assertIsNotNone(failed.completed_at)
        self.assertFalse(source.exists())

    def test_unexpected_exception_never_leaves_job_processing(self) -> None:
        def crashing(*args, **kwargs):
            raise ZeroDivisionError("division by zero")

        self.service.converters[formats.IMAGE] = crashing
        job = self.service.start_conversion(str(self._upload_png()), "webp")
        with self.assertLogs("fileconvert.orchestrator", level="ERROR"):
            self.service.wait(job.job_id, timeout=10)
            wait_until(lambda: self.service.get_job(job.job_id).is_terminal)

        self.assertEqual(self.service.get_job(job.job_id).status, JobStatus.FAILED)

    def test_cancel_in_flight_job_without_process(self) -> None:
        self.service.converters[formats.IMAGE] = self._blocking_converter
        source = self._upload_png()
        job = self.service.start_conversion(str(source), "webp")
        self.assertTrue(wait_until(lambda: self.service.get_job(job.job_id).progress == 30))

        result = self.service.cancel(job.job_id)

        self.assertEqual(result.job.status, JobStatus.CANCELLED)
        self.assertFalse(result.process_killed)
        self.assertTrue(result.file_deleted)
        self.assertNotIn("error", result.job.to_dict())
        self.assertFalse(source.exists())

        with self.assertRaises(JobStateError) as ctx:
            self.service.cancel(job.job_id)
        self.assertEqual(str(ctx.exception), "Job is already cancelled")

        self.release.set()
        self.service.wait(job.job_id, timeout=10)
        final = self.service.get_job(job.job_id)
        self.assertEqual(final.status, JobStatus.CANCELLED)
        self.assertEqual(final.progress, 30)
        self.assertIsNone(final.output_path)
        self.assertFalse((self.settings.output_dir / job.job_id).exists())

    def test_cancel_terminal_job_is_rejected_without_mutation(self) -> None:
        job = self.service.start_conversion(str(self._upload_png()), "png")
        self.service.wait(job.job_id, timeout=10)
        before = self.service.get_job(job.job_id)

        with self.assertRaises(JobStateError):
            self.service.cancel(job.job_id)

        after = self.service.get_job(job.job_id)
        self.assertEqual(
            (after.status, after.progress, after.output_path), (before.status, before.progress, before.output_path)
        )

    def test_cancel_unknown_job(self) -> None:
        with self.assertRaises(NotFoundError):
            self.service.cancel("nope")

    def test_cancel_racing_a_completion_discards_output(self) -> None:
        job = self.service.start_conversion(str(self._upload_png()), "webp")
        self.service.wait(job.job_id, timeout=10)
        completed = self.service.get_job(job.job_id)
        self.assertTrue(completed.output_path.exists())

        # the worker finished after the cancel request passed its state check
        with mock.patch.object(self.service.registry, "ensure_cancellable", return_value=completed):
            result = self.service.cancel(job.job_id)

        final = self.service.get_job(job.job_id)
        self.assertEqual(result.job.status, JobStatus.CANCELLED)
        self.assertEqual(final.status, JobStatus.CANCELLED)
        self.assertIsNone(final.output_path)
        self.assertNotIn("error", final.to_dict())
        self.assertFalse(completed.output_path.exists())
        self.assertFalse((self.settings.output_dir / job.job_id).exists())

    def test_expiry_forgets_late_kills(self) -> None:
        job = self.service.start_conversion(str(self._upload_png()), "jpg")
        self.service.wait(job.job_id, timeout=10)
        self.service.processes.kill(job.job_id)
        self.assertTrue(self.service.processes.is_cancelled(job.job_id))

        later = datetime.now(timezone.utc) + timedelta(hours=self.settings.job_retention_hours + 1)
        with mock.patch("fileconvert.orchestrator._utcnow", return_value=later):
            self.assertEqual(self.service.cleanup_expired(), 1)

        self.assertFalse(self.service.processes.is_cancelled(job.job_id))

    def test_request_fields_must_have_the_right_types(self) -> None:
        source = str(self._upload_png())
        for kwargs in (
            {"output_format": 5},
            {"output_format": "webp", "options": ["width", 10]},
            {"output_format": "webp", "original_filename": 7},
        ):
            with self.subTest(kwargs=kwargs):
                with self.assertRaises(ValidationError):
                    self.service.start_conversion(source, **kwargs)
        with self.assertRaises(ValidationError):
            self.service.start_conversion(42, "webp")
        self.assertEqual(len(self.service.registry), 0)

    def test_cleanup_expired_removes_old_outputs(self) -> None:
        job = self.service.start_conversion(str(self._upload_png()), "jpg")
        self.service.wait(job.job_id, timeout=10)
        job_dir = self.settings.output_dir / job.job_id
        self.assertTrue(job_dir.exists())

        later = datetime.now(timezone.utc) + timedelta(hours=self.settings.job_retention_hours + 1)
        with mock.patch("fileconvert.orchestrator._utcnow", return_value=later):
            self.assertEqual(self.service.cleanup_expired(), 1)

        self.assertFalse(job_dir.exists())
        with self.assertRaises(NotFoundError):
            self.service.get_job(job.job_id)

    def test_save_upload(self) -> None:
        info = self.service.save_upload("My Photo.png", b"\x89PNG fake")
        self.assertTrue(Path(info["path"]).exists())
        self.assertTrue(info["filename"].endswith("_My Photo.png"))
        self.assertEqual(info["fileType"], "png")
        self.assertIn("webp", info["possibleOutputFormats"])

        with self.assertRaises(ValidationError):
            self.service.save_upload("notes.txt", b"hello")
        with self.assertRaises(ValidationError):
            self.service.save_upload("empty.png", b"")


@unittest.skipIf(os.name == "nt", "fake ffmpeg relies on a shebang script")
class VideoCancellationTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        ffmpeg = root / "ffmpeg"
        ffmpeg.write_text(SLOW_FFMPEG.format(python=sys.executable))
        ffmpeg.chmod(ffmpeg.stat().st_mode | stat.S_IXUSR)
        env = mock.patch.dict(os.environ, {"FFMPEG_PATH": str(ffmpeg)})
        env.start()
        self.addCleanup(env.stop)

        self.settings = Settings.for_workspace(root / "workspace")
        self.service = ConversionService(self.settings)

    def tearDown(self) -> None:
        self.service.shutdown()
        self.service.executor.shutdown(wait=True)
        self.temp_dir.cleanup()

    def test_cancel_mid_flight_kills_process(self) -> None:
        source = self.settings.upload_dir / "clip.mp4"
        source.write_bytes(b"video bytes")
        job = self.service.start_conversion(str(source), "webm")

        self.assertTrue(wait_until(lambda: 1 <= self.service.get_job(job.job_id).progress <= 99))
        handles = self.service.processes.handles(job.job_id)
        self.assertEqual(len(handles), 1)

        result = self.service.cancel(job.job_id)
        self.service.wait(job.job_id, timeout=10)

        self.assertTrue(result.process_killed)
        handles[0].wait(timeout=10)
        self.assertIsNotNone(handles[0].poll())
        self.assertEqual(self.service.processes.handles(job.job_id), [])

        final = self.service.get_job(job.job_id)
        self.assertEqual(final.status, JobStatus.CANCELLED)
        self.assertTrue(1 <= final.progress <= 99)
        self.assertNotIn("error", final.to_dict())
        self.assertFalse(source.exists())


if __name__ == "__main__":
    unittest.main()
