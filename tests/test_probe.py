import json
import subprocess
import unittest
from pathlib import Path
from unittest import mock

import probe
from errors import EncoderUnavailable

FILTERS_OUTPUT = """Filters:
  T.. = Timeline support
  .S. = Slice threading
  A = Audio input/output
  | = Source or sink filter
 ... abench            A->A       Benchmark part of a filtergraph.
 TSC afftdn            A->A       Denoise audio samples using FFT.
 T.. deflicker         V->V       Remove temporal frame luminance variations.
 ... vidstabdetect     V->V       Extract relative transformations, pass 1 of 2 for stabilization.
 ... color             |->V       Provide an uniformly colored input.
"""


def completed(returncode: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestFilterSupport(unittest.TestCase):
    def setUp(self):
        probe.list_filters.cache_clear()

    def tearDown(self):
        probe.list_filters.cache_clear()

    def test_list_filters_parses_filter_names(self):
        with mock.patch("probe.run_subprocess", return_value=completed(0, FILTERS_OUTPUT)):
            names = probe.list_filters("ffmpeg")

        self.assertEqual(
            names,
            {"abench", "afftdn", "deflicker", "vidstabdetect", "color"},
        )

    def test_supports_filter_matches_whole_tokens(self):
        with mock.patch("probe.run_subprocess", return_value=completed(0, FILTERS_OUTPUT)) as run_mock:
            self.assertTrue(probe.supports_filter("ffmpeg", "vidstabdetect"))
            self.assertFalse(probe.supports_filter("ffmpeg", "vidstab"))
            self.assertFalse(probe.supports_filter("ffmpeg", "vidstabtransform"))
            self.assertFalse(probe.supports_filter("ffmpeg", "Timeline"))

        run_mock.assert_called_once()

    def test_supports_filter_is_false_when_ffmpeg_cannot_run(self):
        with mock.patch("probe.run_subprocess", side_effect=FileNotFoundError("ffmpeg")):
            self.assertFalse(probe.supports_filter("/missing/ffmpeg", "deflicker"))

    def test_supports_filter_is_false_on_nonzero_exit(self):
        with mock.patch("probe.run_subprocess", return_value=completed(1, FILTERS_OUTPUT)):
            self.assertFalse(probe.supports_filter("ffmpeg", "deflicker"))


class TestEncoderSupport(unittest.TestCase):
    def test_probe_command_writes_to_null_muxer(self):
        cmd = probe.build_encoder_probe_command("ffmpeg", "h264_nvenc")
        self.assertEqual(cmd[cmd.index("-c:v") + 1], "h264_nvenc")
        self.assertEqual(cmd[-3:], ["-f", "null", "-"])
        self.assertIn("lavfi", cmd)

    def test_supports_encoder_true_on_zero_exit(self):
        with mock.patch("probe.run_subprocess", return_value=completed(0)) as run_mock:
            self.assertTrue(probe.supports_encoder("ffmpeg", "h264_qsv"))
        self.assertEqual(run_mock.call_args.kwargs["timeout"], probe.ENCODER_PROBE_TIMEOUT)

    def test_supports_encoder_false_on_failure(self):
        with mock.patch(
            "probe.run_subprocess",
            return_value=completed(1, stderr="Cannot load nvcuda.dll\n"),
        ):
            self.assertFalse(probe.supports_encoder("ffmpeg", "h264_nvenc"))

    def test_check_encoder_reports_last_stderr_line(self):
        with mock.patch(
            "probe.run_subprocess",
            return_value=completed(1, stderr="line one\nNo NVENC capable devices found\n"),
        ):
            with self.assertRaises(EncoderUnavailable) as ctx:
                probe.check_encoder("ffmpeg", "hevc_nvenc")
        self.assertIn("No NVENC capable devices found", str(ctx.exception))

    def test_supports_encoder_false_on_timeout(self):
        with mock.patch(
            "probe.run_subprocess",
            side_effect=subprocess.TimeoutExpired(cmd="ffmpeg", timeout=20),
        ):
            self.assertFalse(probe.supports_encoder("ffmpeg", "h264_amf"))


class TestMetadata(unittest.TestCase):
    def test_parse_framerate_handles_fractions_and_garbage(self):
        self.assertAlmostEqual(probe.parse_framerate("30000/1001"), 29.97, places=2)
        self.assertEqual(probe.parse_framerate("25"), 25.0)
        self.assertEqual(probe.parse_framerate("0/0"), probe.DEFAULT_FPS)
        self.assertEqual(probe.parse_framerate("abc"), probe.DEFAULT_FPS)
        self.assertEqual(probe.parse_framerate(""), probe.DEFAULT_FPS)
        self.assertEqual(probe.parse_framerate("1000"), probe.DEFAULT_FPS)

    def test_get_frame_rate_reads_first_stream(self):
        payload = json.dumps({"streams": [{"avg_frame_rate": "15/1", "r_frame_rate": "30/1"}]})
        with mock.patch("probe.run_subprocess", return_value=completed(0, payload)):
            fps = probe.get_frame_rate("ffprobe", Path("/clips/MOVI001.avi"))
        self.assertEqual(fps, 15.0)

    def test_get_frame_rate_uses_real_rate_when_average_unset(self):
        payload = json.dumps({"streams": [{"avg_frame_rate": "0/0", "r_frame_rate": "25/1"}]})
        with mock.patch("probe.run_subprocess", return_value=completed(0, payload)):
            fps = probe.get_frame_rate("ffprobe", Path("/clips/MOVI001.avi"))
        self.assertEqual(fps, 25.0)

    def test_get_frame_rate_falls_back_when_unreadable(self):
        with mock.patch("probe.run_subprocess", return_value=completed(1)):
            self.assertEqual(probe.get_frame_rate("ffprobe", Path("x.avi")), probe.DEFAULT_FPS)
        with mock.patch("probe.run_subprocess", return_value=completed(0, "not json")):
            self.assertEqual(probe.get_frame_rate("ffprobe", Path("x.avi")), probe.DEFAULT_FPS)
        with mock.patch("probe.run_subprocess", return_value=completed(0, '{"streams": []}')):
            self.assertEqual(probe.get_frame_rate("ffprobe", Path("x.avi")), probe.DEFAULT_FPS)

    def test_get_concat_duration(self):
        payload = json.dumps({"format": {"duration": "42.5"}})
        with mock.patch("probe.run_subprocess", return_value=completed(0, payload)) as run_mock:
            duration = probe.get_concat_duration("ffprobe", Path("/work/list.txt"))
        self.assertEqual(duration, 42.5)
        self.assertIn("concat", run_mock.call_args[0][0])

        with mock.patch("probe.run_subprocess", return_value=completed(0, "{}")):
            self.assertIsNone(probe.get_concat_duration("ffprobe", Path("/work/list.txt")))


if __name__ == "__main__":
    unittest.main()
