import unittest
from unittest import mock

import encoders
from errors import EncoderUnavailable, UnknownEncoder


class TestSoftwarePlan(unittest.TestCase):
    def test_software_passes_quality_and_preset_through(self):
        plan = encoders.build_plan("libx264", 19, "veryslow")
        self.assertEqual(
            list(plan.args),
            ["-c:v", "libx264", "-preset", "veryslow", "-crf", "19"],
        )
        self.assertEqual(plan.pix_fmt, "yuv420p")

    def test_software_never_clamps(self):
        for quality in (0, 10, 35, 51):
            plan = encoders.build_plan("libx264", quality, "slow")
            self.assertEqual(plan.args[-1], str(quality))
            self.assertEqual(plan.quality, quality)

    def test_software_keeps_custom_preset_names(self):
        plan = encoders.build_plan("libx264", 20, "mycustom")
        self.assertIn("mycustom", plan.args)


class TestNvencPlan(unittest.TestCase):
    def test_h264_nvenc_in_band_quality_and_slow_preset(self):
        plan = encoders.build_plan("h264_nvenc", 19, "slow")
        self.assertEqual(
            list(plan.args),
            ["-c:v", "h264_nvenc", "-preset", "p6", "-rc", "vbr", "-cq", "19", "-b:v", "0"],
        )
        self.assertEqual(plan.pix_fmt, "yuv420p")

    def test_h264_nvenc_clamps_to_nearest_bound(self):
        self.assertEqual(encoders.build_plan("h264_nvenc", 5, "slow").quality, 15)
        self.assertEqual(encoders.build_plan("h264_nvenc", 40, "slow").quality, 28)

    def test_h264_nvenc_clamp_is_monotonic(self):
        results = [encoders.build_plan("h264_nvenc", q, "slow").quality for q in range(0, 52)]
        self.assertEqual(results, sorted(results))
        self.assertTrue(all(15 <= value <= 28 for value in results))

    def test_hevc_nvenc_allows_higher_upper_bound(self):
        self.assertEqual(encoders.build_plan("hevc_nvenc", 30, "slow").quality, 30)
        self.assertEqual(encoders.build_plan("hevc_nvenc", 45, "slow").quality, 30)

    def test_nvenc_preset_table(self):
        expected = {
            "ultrafast": "p1",
            "veryfast": "p2",
            "faster": "p3",
            "fast": "p4",
            "medium": "p5",
            "slow": "p6",
            "veryslow": "p7",
            "placebo": "p7",
            "weird": "p6",
        }
        for preset, token in expected.items():
            plan = encoders.build_plan("h264_nvenc", 20, preset)
            self.assertEqual(plan.args[plan.args.index("-preset") + 1], token, preset)


class TestQsvPlan(unittest.TestCase):
    def test_qsv_uses_global_quality_and_look_ahead(self):
        plan = encoders.build_plan("h264_qsv", 12, "medium")
        args = list(plan.args)
        self.assertEqual(args[args.index("-global_quality") + 1], "15")
        self.assertEqual(args[args.index("-look_ahead") + 1], "1")
        self.assertEqual(args[args.index("-preset") + 1], "medium")
        self.assertEqual(plan.pix_fmt, "nv12")

    def test_qsv_replaces_unsupported_presets(self):
        plan = encoders.build_plan("hevc_qsv", 22, "ultrafast")
        self.assertEqual(plan.args[plan.args.index("-preset") + 1], "slow")


class TestAmfPlan(unittest.TestCase):
    def test_amf_uses_constant_qp_two_below_quality(self):
        plan = encoders.build_plan("h264_amf", 21, "slow")
        self.assertEqual(
            list(plan.args),
            ["-c:v", "h264_amf", "-rc", "cqp", "-qp_i", "19", "-qp_p", "19", "-qp_b", "19"],
        )
        self.assertEqual(plan.pix_fmt, "nv12")

    def test_amf_bounds_differ_by_codec(self):
        self.assertEqual(encoders.build_plan("h264_amf", 40, "slow").quality, 26)
        self.assertEqual(encoders.build_plan("hevc_amf", 40, "slow").quality, 28)
        self.assertEqual(encoders.build_plan("hevc_amf", 10, "slow").quality, 14)


class TestEncoderResolution(unittest.TestCase):
    def test_unknown_encoder_raises(self):
        with self.assertRaises(UnknownEncoder):
            encoders.build_plan("libvpx", 20, "slow")
        with self.assertRaises(UnknownEncoder):
            encoders.resolve_encoder("ffmpeg", "libvpx")

    def test_software_encoder_is_not_probed(self):
        with mock.patch("encoders.check_encoder") as check_mock:
            resolved = encoders.resolve_encoder("ffmpeg", "libx264")
        self.assertEqual(resolved, "libx264")
        check_mock.assert_not_called()

    def test_working_hardware_encoder_is_kept(self):
        with mock.patch("encoders.check_encoder") as check_mock:
            resolved = encoders.resolve_encoder("ffmpeg", "hevc_nvenc")
        self.assertEqual(resolved, "hevc_nvenc")
        check_mock.assert_called_once_with("ffmpeg", "hevc_nvenc")

    def test_failed_hardware_probe_falls_back_to_software(self):
        with mock.patch(
            "encoders.check_encoder",
            side_effect=EncoderUnavailable("h264_qsv is not usable on this machine"),
        ), mock.patch("encoders.progress_write") as write_mock:
            resolved = encoders.resolve_encoder("ffmpeg", "h264_qsv")

        self.assertEqual(resolved, "libx264")
        self.assertIn("Falling back to libx264", write_mock.call_args[0][0])

    def test_dry_run_skips_probe(self):
        with mock.patch("encoders.check_encoder") as check_mock:
            resolved = encoders.resolve_encoder("ffmpeg", "h264_amf", dry_run=True)
        self.assertEqual(resolved, "h264_amf")
        check_mock.assert_not_called()

    def test_describe_plan_mentions_requested_encoder(self):
        plan = encoders.build_plan("libx264", 19, "slow")
        self.assertEqual(
            encoders.describe_plan(plan, "h264_nvenc"),
            "libx264 (requested h264_nvenc), quality 19, yuv420p",
        )


if __name__ == "__main__":
    unittest.main()
