import json
import subprocess
import unittest
from pathlib import Path
from unittest import mock

import media_probe
from errors import ProbeFailure


def probe_result(payload, returncode=0, stderr=""):
    return subprocess.CompletedProcess([], returncode, json.dumps(payload), stderr)


class TestParseFramerate(unittest.TestCase):
    def test_fraction(self):
        self.assertAlmostEqual(media_probe.parse_framerate("30000/1001"), 29.97, places=2)

    def test_zero_denominator_uses_default(self):
        self.assertEqual(media_probe.parse_framerate("25/0"), media_probe.DEFAULT_FPS)

    def test_garbage_uses_default(self):
        self.assertEqual(media_probe.parse_framerate("abc", default=12.0), 12.0)


class TestProbe(unittest.TestCase):
    def test_get_media_duration_reads_format_duration(self):
        payload = {"format": {"duration": "42.5"}, "streams": []}
        with mock.patch("media_probe.run_subprocess", return_value=probe_result(payload)):
            duration = media_probe.get_media_duration("ffprobe", Path("track.mp3"))
        self.assertAlmostEqual(duration, 42.5)

    def test_get_media_duration_falls_back_to_stream_duration(self):
        payload = {"format": {}, "streams": [{"codec_type": "audio", "duration": "10.0"}]}
        with mock.patch("media_probe.run_subprocess", return_value=probe_result(payload)):
            duration = media_probe.get_media_duration("ffprobe", Path("track.mp3"))
        self.assertAlmostEqual(duration, 10.0)

    def test_get_media_duration_without_duration_raises(self):
        with mock.patch("media_probe.run_subprocess", return_value=probe_result({"format": {}})):
            with self.assertRaises(ProbeFailure):
                media_probe.get_media_duration("ffprobe", Path("broken.mp4"))

    def test_nonzero_ffprobe_exit_raises(self):
        failed = subprocess.CompletedProcess([], 1, "", "moov atom not found")
        with mock.patch("media_probe.run_subprocess", return_value=failed):
            with self.assertRaises(ProbeFailure) as ctx:
                media_probe.probe_json("ffprobe", Path("broken.mp4"))
        self.assertIn("moov atom", str(ctx.exception))

    def test_ffprobe_timeout_raises(self):
        with mock.patch(
            "media_probe.run_subprocess",
            side_effect=subprocess.TimeoutExpired(cmd="ffprobe", timeout=60),
        ):
            with self.assertRaises(ProbeFailure):
                media_probe.probe_json("ffprobe", Path("slow.mp4"))

    def test_get_video_info_parses_streams(self):
        payload = {
            "streams": [
                {"codec_type": "video", "r_frame_rate": "30/1", "width": 640, "height": 360},
                {"codec_type": "audio", "codec_name": "aac"},
            ],
            "format": {"duration": "3.0"},
        }
        with mock.patch("media_probe.run_subprocess", return_value=probe_result(payload)):
            info = media_probe.get_video_info("ffprobe", Path("clip.mp4"))
        self.assertEqual((info.width, info.height), (640, 360))
        self.assertAlmostEqual(info.framerate, 30.0)
        self.assertTrue(info.has_audio)
        self.assertEqual(info.audio_codec, "aac")

    def test_dimension_and_fps_helpers_tolerate_ffprobe_failure(self):
        with mock.patch("media_probe.run_subprocess", side_effect=OSError("missing")):
            self.assertEqual(media_probe.get_video_dimensions("ffprobe", Path("x.mp4")), (0, 0))
            self.assertEqual(media_probe.get_video_fps("ffprobe", Path("x.mp4")), media_probe.DEFAULT_FPS)



class TestFrameTimes(unittest.TestCase):
    def test_reads_presentation_times_in_frame_order(self):
        payload = {
            "frames": [
                {"pts_time": "0.000000"},
                {"best_effort_timestamp_time": "0.040000"},
                {"pkt_dts_time": "0.080000"},
                {"pts_time": "N/A"},
            ]
        }
        with mock.patch("media_probe.run_subprocess", return_value=probe_result(payload)) as run_mock:
            times = media_probe.get_frame_times("ffprobe", Path("clip.mp4"))
        self.assertEqual(times, [0.0, 0.04, 0.08])
        self.assertIn("-show_frames", run_mock.call_args.args[0])

    def test_failed_frame_listing_raises(self):
        failed = subprocess.CompletedProcess([], 1, "", "Invalid data found")
        with mock.patch("media_probe.run_subprocess", return_value=failed):
            with self.assertRaises(ProbeFailure):
                media_probe.get_frame_times("ffprobe", Path("broken.mp4"))


if __name__ == "__main__":
    unittest.main()
