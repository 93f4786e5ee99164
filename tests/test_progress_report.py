import unittest

import progress_report
from progress_report import ProgressEvent, StageProgress


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestNormalize(unittest.TestCase):
    def test_normalize_clamps_to_total_and_computes_rate(self):
        event = progress_report.normalize("extract_frames", 60, 48, elapsed_seconds=2.0)
        self.assertEqual(event.units_completed, 48)
        self.assertEqual(event.units_total, 48)
        self.assertEqual(event.rate, 24.0)

    def test_normalize_without_elapsed_time_has_no_rate(self):
        event = progress_report.normalize("extract_frames", 3, None, elapsed_seconds=0.0)
        self.assertIsNone(event.rate)
        self.assertIsNone(event.units_total)

    def test_terminal_with_unknown_total_adopts_count(self):
        event = progress_report.terminal("extract_frames", 17, None, elapsed_seconds=1.0)
        self.assertTrue(event.final)
        self.assertEqual(event.units_completed, 17)
        self.assertEqual(event.units_total, 17)


class TestStageProgress(unittest.TestCase):
    def test_emits_reset_updates_and_terminal(self):
        events = []
        clock = FakeClock()
        with StageProgress("upscale_frames", 4, events.append, clock=clock) as progress:
            clock.now += 1.0
            progress.update(1)
            clock.now += 1.0
            progress.advance()

        self.assertEqual(events[0], ProgressEvent("upscale_frames", 0, 4, None))
        self.assertEqual(events[1].units_completed, 1)
        self.assertEqual(events[1].rate, 1.0)
        self.assertEqual(events[2].units_completed, 2)
        self.assertEqual(events[2].rate, 1.0)
        self.assertTrue(events[-1].final)
        self.assertEqual(events[-1].units_completed, 4)
        self.assertEqual(events[-1].units_total, 4)

    def test_counter_never_moves_backwards(self):
        events = []
        with StageProgress("import_frames", 10, events.append) as progress:
            progress.update(5)
            progress.update(3)
            progress.update(5)

        self.assertEqual([e.units_completed for e in events], [0, 5, 10])

    def test_no_terminal_event_when_stage_raises(self):
        events = []
        with self.assertRaises(RuntimeError):
            with StageProgress("mux_output", 100, events.append) as progress:
                progress.update(40)
                raise RuntimeError("mkvmerge exited with code 2")

        self.assertFalse(any(event.final for event in events))

    def test_close_is_emitted_once(self):
        events = []
        progress = StageProgress("metadata_probe", 1, events.append)
        with progress:
            progress.advance()
        progress.close()
        self.assertEqual(sum(1 for event in events if event.final), 1)


class TestTqdmProgressDisplay(unittest.TestCase):
    def test_display_handles_unknown_total_and_closes_on_terminal(self):
        display = progress_report.TqdmProgressDisplay({"extract_frames": "Extracting Frames"}, disable=True)
        with StageProgress("extract_frames", None, display) as progress:
            progress.update(12)
            self.assertIsNotNone(display._bar)
            self.assertIsNone(display._bar.total)

        self.assertIsNone(display._bar)

    def test_display_switches_bars_between_stages(self):
        display = progress_report.TqdmProgressDisplay(disable=True)
        display(ProgressEvent("upscale_frames", 0, 3))
        first_bar = display._bar
        display(ProgressEvent("import_frames", 0, 3))

        self.assertIsNot(first_bar, display._bar)
        display.close()
        self.assertIsNone(display._bar)


if __name__ == "__main__":
    unittest.main()
