import tempfile
import unittest
from pathlib import Path
from unittest import mock

import scene_split
from errors import OperationCancelled, OperationFailure, ProbeFailure, SplitFailure
from executor import OperationLog
from toolchain import Toolchain

SHOWINFO_STDERR = """\
[Parsed_showinfo_1 @ 0x1] n:   0 pts:  48000 pts_time:3.2     duration: 512
[Parsed_showinfo_1 @ 0x1] n:   1 pts:  12000 pts_time:0.8     duration: 512
frame=    2 fps=0.0 q=-0.0 Lsize=N/A time=00:00:05.00
"""

TOOLCHAIN = Toolchain(ffmpeg="ffmpeg", ffprobe="ffprobe")


class TestSceneTimestamps(unittest.TestCase):
    def test_parses_sorts_and_prepends_zero(self):
        self.assertEqual(scene_split.parse_scene_timestamps(SHOWINFO_STDERR), [0.0, 0.8, 3.2])

    def test_no_cuts_yields_single_boundary(self):
        self.assertEqual(scene_split.parse_scene_timestamps("nothing useful"), [0.0])

    def test_existing_zero_not_duplicated(self):
        stderr = "pts_time:0\npts_time:2.5\n"
        self.assertEqual(scene_split.parse_scene_timestamps(stderr), [0.0, 2.5])

    def test_boundaries_are_non_decreasing(self):
        stderr = "\n".join(f"pts_time:{value}" for value in (4.0, 1.0, 2.5, 2.5))
        boundaries = scene_split.parse_scene_timestamps(stderr)
        self.assertEqual(boundaries[0], 0.0)
        self.assertEqual(boundaries, sorted(boundaries))


class TestSegmentSpans(unittest.TestCase):
    def test_tail_frames_are_shaved(self):
        spans = scene_split.segment_spans([0.0, 2.0, 5.0], 25.0, 2)
        self.assertEqual(len(spans), 2)
        self.assertAlmostEqual(spans[0][0], 0.0)
        self.assertAlmostEqual(spans[0][1], 1.92)
        self.assertAlmostEqual(spans[1][0], 2.0)
        self.assertAlmostEqual(spans[1][1], 2.92)

    def test_non_positive_duration_becomes_minimum(self):
        spans = scene_split.segment_spans([0.0, 0.05], 25.0, 2)
        self.assertEqual(spans, [(0.0, scene_split.MIN_SEGMENT_SECONDS)])


class TestSplitVariants(unittest.TestCase):
    def build(self, **kwargs):
        return scene_split.build_split_variants(
            "ffmpeg", Path("in.mp4"), Path("out.mp4"), start=1.0, duration=2.0, **kwargs
        )

    def test_default_order_is_output_seek_input_seek_end_time(self):
        variants = self.build()
        self.assertEqual(len(variants), 3)
        first = variants[0]
        self.assertLess(first.index("-i"), first.index("-ss"))
        second = variants[1]
        self.assertLess(second.index("-ss"), second.index("-i"))
        self.assertIn("-to", variants[2])
        self.assertIn("2.980", variants[2])

    def test_fast_seek_first_swaps_reencode_variants(self):
        variants = self.build(fast_seek_first=True)
        self.assertLess(variants[0].index("-ss"), variants[0].index("-i"))

    def test_fast_split_copy_goes_first(self):
        variants = self.build(fast_split_copy=True)
        self.assertEqual(len(variants), 4)
        self.assertIn("copy", variants[0])

    def test_end_time_variant_can_be_left_out(self):
        variants = self.build(include_end_time_variant=False)
        self.assertEqual(len(variants), 2)
        self.assertTrue(all("-to" not in variant for variant in variants))

    def test_repaired_source_skips_end_time_variant(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            oplog = OperationLog(Path(temp_dir))
            source = Path(temp_dir) / "in.mp4"
            with mock.patch("scene_split.run_variants") as run_mock:
                scene_split.split_segment(
                    "ffmpeg",
                    source,
                    Path(temp_dir) / "out.mp4",
                    start=0.0,
                    duration=1.0,
                    settings=scene_split.SplitSettings(),
                    oplog=oplog,
                    log_base="split",
                )
        builder = run_mock.call_args.args[0]
        self.assertEqual(len(builder(source)), 3)
        self.assertEqual(len(builder(Path(temp_dir) / "_fixed" / "in_remux.mp4")), 2)

    def test_frame_range_cut_is_tried_before_time_cuts(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            oplog = OperationLog(Path(temp_dir))
            source = Path(temp_dir) / "in.mp4"
            with mock.patch("scene_split.run_variants") as run_mock:
                scene_split.split_segment(
                    "ffmpeg",
                    source,
                    Path(temp_dir) / "out.mp4",
                    start=2.0,
                    duration=3.0,
                    settings=scene_split.SplitSettings(frame_accurate=True),
                    oplog=oplog,
                    log_base="split_frame_in_1",
                    frames=(48, 120),
                )
        variants = run_mock.call_args.args[0](source)
        self.assertEqual(len(variants), 4)
        self.assertIn("select='between(n\\,48\\,119)',setpts=N/FRAME_RATE/TB", variants[0])
        self.assertNotIn("-ss", variants[0])

    def test_split_failure_writes_fatal_log(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            oplog = OperationLog(Path(temp_dir))
            with mock.patch("scene_split.run_variants", side_effect=OperationFailure("nope")):
                with self.assertRaises(SplitFailure):
                    scene_split.split_segment(
                        "ffmpeg",
                        Path(temp_dir) / "in.mp4",
                        Path(temp_dir) / "out.mp4",
                        start=0.0,
                        duration=1.0,
                        settings=scene_split.SplitSettings(),
                        oplog=oplog,
                        log_base="split_x_0",
                    )
            self.assertTrue(oplog.path_for("split_x_0_fatal").exists())


class TestFrameRanges(unittest.TestCase):
    def test_boundaries_map_to_first_frame_at_or_after(self):
        frame_times = [0.0, 0.04, 0.08, 0.12, 0.16, 0.2]
        self.assertEqual(scene_split.frame_index_at(frame_times, 0.1), 3)
        self.assertEqual(scene_split.frame_index_at(frame_times, 9.0), 6)
        self.assertEqual(
            scene_split.frame_ranges([0.0, 0.1, 0.2], frame_times), [(0, 3), (3, 5)]
        )

    def test_range_is_never_empty(self):
        frame_times = [0.0, 0.5, 1.0]
        self.assertEqual(scene_split.frame_ranges([0.0, 0.6, 0.7], frame_times), [(0, 2), (2, 3)])


def fake_split(ffmpeg_bin, input_video, output_path, **kwargs):
    output_path.write_bytes(b"clip")


class TestSplitBatch(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.layout = scene_split.InputLayout(input_dir=root / "input", clips_dir=root / "clips")
        self.layout.input_dir.mkdir()
        (self.layout.input_dir / "beach.mp4").write_bytes(b"raw")
        self.oplog = OperationLog(root / "logs")

    def tearDown(self):
        self.temp_dir.cleanup()

    def run_batch(self):
        return scene_split.run_split_batch(
            TOOLCHAIN, self.layout, scene_split.SplitSettings(), oplog=self.oplog
        )

    def test_splits_source_into_aliased_segments(self):
        with mock.patch(
            "scene_split.detect_scene_boundaries", return_value=[0.0, 2.0, 5.0]
        ), mock.patch("scene_split.get_video_fps", return_value=25.0), mock.patch(
            "scene_split.split_segment", side_effect=fake_split
        ) as split_mock, mock.patch("scene_split.reencode_segment"), mock.patch(
            "scene_split.get_media_duration", return_value=1.9
        ):
            report = self.run_batch()

        clips = sorted(path.name for path in self.layout.clips_dir.glob("*.mp4"))
        self.assertEqual(clips, ["input_a_0.mp4", "input_a_1.mp4"])
        self.assertEqual(report.processed, ["beach.mp4"])
        self.assertEqual(report.segment_count, 2)
        self.assertTrue((self.layout.processed_dir / "beach.mp4").exists())
        self.assertEqual(split_mock.call_args_list[1].kwargs["start"], 2.0)

    def test_zero_cut_source_yields_no_segments(self):
        with mock.patch("scene_split.detect_scene_boundaries", return_value=[0.0]), mock.patch(
            "scene_split.split_segment"
        ) as split_mock:
            report = self.run_batch()

        split_mock.assert_not_called()
        self.assertEqual(report.no_cuts, ["beach.mp4"])
        self.assertEqual(list(self.layout.clips_dir.glob("*.mp4")), [])
        self.assertTrue((self.layout.processed_dir / "beach.mp4").exists())

    def test_detection_failing_twice_buckets_source(self):
        repaired = Path(self.temp_dir.name) / "repaired.mp4"
        with mock.patch(
            "executor.run_logged", side_effect=OperationFailure("detect failed")
        ) as run_mock, mock.patch("executor.quick_fix_video", return_value=repaired) as fix_mock:
            report = self.run_batch()

        self.assertEqual(run_mock.call_count, 2)
        fix_mock.assert_called_once()
        self.assertEqual(report.detection_failed, ["beach.mp4"])
        self.assertTrue((self.layout.detection_failed_dir / "beach.mp4").exists())
        self.assertEqual(list(self.layout.clips_dir.glob("*.mp4")), [])

    def test_split_failure_discards_partial_segments(self):
        def split_then_fail(ffmpeg_bin, input_video, output_path, **kwargs):
            if output_path.name.endswith("_1.mp4"):
                raise SplitFailure("cut failed")
            output_path.write_bytes(b"clip")

        with mock.patch(
            "scene_split.detect_scene_boundaries", return_value=[0.0, 2.0, 5.0, 9.0]
        ), mock.patch("scene_split.get_video_fps", return_value=25.0), mock.patch(
            "scene_split.split_segment", side_effect=split_then_fail
        ):
            report = self.run_batch()

        self.assertEqual(report.split_failed, ["beach.mp4"])
        self.assertTrue((self.layout.split_failed_dir / "beach.mp4").exists())
        self.assertEqual(list(self.layout.clips_dir.glob("*.mp4")), [])

    def test_already_split_source_is_archived_without_work(self):
        self.layout.clips_dir.mkdir()
        (self.layout.clips_dir / "input_a_0.mp4").write_bytes(b"clip")
        with mock.patch("scene_split.detect_scene_boundaries") as detect_mock:
            report = self.run_batch()

        detect_mock.assert_not_called()
        self.assertEqual(report.skipped_existing, ["beach.mp4"])
        self.assertTrue((self.layout.processed_dir / "beach.mp4").exists())

    def test_unreadable_segment_is_dropped(self):
        with mock.patch(
            "scene_split.detect_scene_boundaries", return_value=[0.0, 2.0, 5.0]
        ), mock.patch("scene_split.get_video_fps", return_value=25.0), mock.patch(
            "scene_split.split_segment", side_effect=fake_split
        ), mock.patch("scene_split.reencode_segment"), mock.patch(
            "scene_split.get_media_duration", side_effect=[1.9, ProbeFailure("bad")]
        ):
            report = self.run_batch()

        self.assertEqual(report.segment_count, 1)
        clips = sorted(path.name for path in self.layout.clips_dir.glob("*.mp4"))
        self.assertEqual(clips, ["input_a_0.mp4"])

    def test_cancelled_split_leaves_no_segments_and_keeps_source_pending(self):
        def split_until_cancelled(ffmpeg_bin, input_video, output_path, **kwargs):
            if output_path.name.endswith("_2.mp4"):
                raise OperationCancelled("stop requested")
            output_path.write_bytes(b"clip")

        with mock.patch(
            "scene_split.detect_scene_boundaries", return_value=[0.0, 2.0, 5.0, 9.0]
        ), mock.patch("scene_split.get_video_fps", return_value=25.0), mock.patch(
            "scene_split.split_segment", side_effect=split_until_cancelled
        ):
            with self.assertRaises(OperationCancelled):
                self.run_batch()

        self.assertEqual(list(self.layout.clips_dir.glob("*.mp4")), [])
        self.assertFalse(scene_split.staging_dir_for(self.layout.clips_dir, "input_a").exists())
        self.assertTrue((self.layout.pending_dir / "beach.mp4").exists())

    def test_rerun_after_cancellation_splits_again(self):
        with mock.patch(
            "scene_split.detect_scene_boundaries", return_value=[0.0, 2.0, 5.0]
        ), mock.patch("scene_split.get_video_fps", return_value=25.0), mock.patch(
            "scene_split.split_segment", side_effect=fake_split
        ), mock.patch(
            "scene_split.reencode_segment",
            side_effect=[None, OperationCancelled("stop requested")],
        ):
            with self.assertRaises(OperationCancelled):
                self.run_batch()

        self.assertEqual(list(self.layout.clips_dir.glob("*.mp4")), [])

        with mock.patch(
            "scene_split.detect_scene_boundaries", return_value=[0.0, 2.0, 5.0]
        ) as detect_mock, mock.patch("scene_split.get_video_fps", return_value=25.0), mock.patch(
            "scene_split.split_segment", side_effect=fake_split
        ), mock.patch("scene_split.reencode_segment"), mock.patch(
            "scene_split.get_media_duration", return_value=1.9
        ):
            report = self.run_batch()

        detect_mock.assert_called_once()
        self.assertEqual(report.processed, ["beach.mp4"])
        self.assertEqual(report.skipped_existing, [])
        clips = sorted(path.name for path in self.layout.clips_dir.glob("*.mp4"))
        self.assertEqual(clips, ["input_a_0.mp4", "input_a_1.mp4"])

    def test_leftover_staging_folder_forces_resplit(self):
        # A killed run can leave published clips next to its staging folder.
        self.layout.clips_dir.mkdir()
        (self.layout.clips_dir / "input_a_0.mp4").write_bytes(b"stale")
        staging = scene_split.staging_dir_for(self.layout.clips_dir, "input_a")
        staging.mkdir(parents=True)
        (staging / "input_a_1.mp4").write_bytes(b"stale")

        with mock.patch(
            "scene_split.detect_scene_boundaries", return_value=[0.0, 4.0]
        ), mock.patch("scene_split.get_video_fps", return_value=25.0), mock.patch(
            "scene_split.split_segment", side_effect=fake_split
        ), mock.patch("scene_split.reencode_segment"), mock.patch(
            "scene_split.get_media_duration", return_value=3.9
        ):
            report = self.run_batch()

        self.assertEqual(report.skipped_existing, [])
        self.assertEqual(report.processed, ["beach.mp4"])
        self.assertEqual((self.layout.clips_dir / "input_a_0.mp4").read_bytes(), b"clip")
        self.assertFalse(staging.exists())

    def test_frame_accurate_mode_passes_frame_ranges(self):
        frame_times = [index * 0.5 for index in range(12)]
        with mock.patch(
            "scene_split.detect_scene_boundaries", return_value=[0.0, 2.0, 5.0]
        ), mock.patch("scene_split.get_video_fps", return_value=2.0), mock.patch(
            "scene_split.get_frame_times", return_value=frame_times
        ), mock.patch(
            "scene_split.split_segment", side_effect=fake_split
        ) as split_mock, mock.patch("scene_split.reencode_segment"), mock.patch(
            "scene_split.get_media_duration", return_value=1.9
        ):
            scene_split.run_split_batch(
                TOOLCHAIN,
                self.layout,
                scene_split.SplitSettings(frame_accurate=True),
                oplog=self.oplog,
            )

        calls = split_mock.call_args_list
        self.assertEqual([call.kwargs["frames"] for call in calls], [(0, 4), (4, 10)])
        self.assertEqual(calls[0].kwargs["log_base"], "split_frame_beach_0")

    def test_frame_accurate_mode_falls_back_to_time_cuts(self):
        with mock.patch(
            "scene_split.detect_scene_boundaries", return_value=[0.0, 2.0]
        ), mock.patch("scene_split.get_video_fps", return_value=25.0), mock.patch(
            "scene_split.get_frame_times", side_effect=ProbeFailure("no frames")
        ), mock.patch(
            "scene_split.split_segment", side_effect=fake_split
        ) as split_mock, mock.patch("scene_split.reencode_segment"), mock.patch(
            "scene_split.get_media_duration", return_value=1.9
        ):
            report = scene_split.run_split_batch(
                TOOLCHAIN,
                self.layout,
                scene_split.SplitSettings(frame_accurate=True),
                oplog=self.oplog,
            )

        self.assertEqual(report.segment_count, 1)
        self.assertIsNone(split_mock.call_args.kwargs["frames"])
        self.assertEqual(split_mock.call_args.kwargs["log_base"], "split_alias_beach_0")


class TestSourceStateMachine(unittest.TestCase):
    def test_repair_moves_source_through_repairing(self):
        seen_states = []
        with tempfile.TemporaryDirectory() as temp_dir:
            source = scene_split.SourceVideo(path=Path(temp_dir) / "a.mp4", alias="input_a")
            repairer = mock.Mock(return_value=Path(temp_dir) / "fixed.mp4")

            def detect(ffmpeg_bin, input_video, **kwargs):
                kwargs["repair"](input_video)
                seen_states.append(source.state)
                return [0.0]

            with mock.patch("scene_split.detect_scene_boundaries", side_effect=detect):
                segments = scene_split.segment_source(
                    source,
                    TOOLCHAIN,
                    Path(temp_dir) / "clips",
                    scene_split.SplitSettings(),
                    oplog=OperationLog(Path(temp_dir)),
                    repairer=repairer,
                )

        self.assertEqual(segments, [])
        self.assertEqual(seen_states, [scene_split.SourceState.REPAIRING])
        self.assertEqual(source.state, scene_split.SourceState.DONE)

    def test_pending_state_cannot_be_archived(self):
        layout = scene_split.InputLayout(input_dir=Path("input"), clips_dir=Path("clips"))
        with self.assertRaises(ValueError):
            layout.destination_for(scene_split.SourceState.PENDING)

    def test_only_terminal_states_have_an_archive_folder(self):
        layout = scene_split.InputLayout(input_dir=Path("input"), clips_dir=Path("clips"))
        for state in scene_split.SourceState:
            if state in scene_split.TERMINAL_STATES:
                self.assertEqual(layout.destination_for(state).parent, Path("input"))
            else:
                with self.assertRaises(ValueError):
                    layout.destination_for(state)
        self.assertEqual(
            layout.destination_for(scene_split.SourceState.DONE), layout.processed_dir
        )


if __name__ == "__main__":
    unittest.main()
