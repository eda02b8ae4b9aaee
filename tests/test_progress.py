"""Tests for ffmpeg progress parsing."""

from relay_supervisor.progress import ProgressParser

STATS = "frame=  250 fps= 25 q=-1.0 size=    1024kB time=00:00:10.00 bitrate= 838.9kbits/s speed=1.00x"


def test_stats_line_is_parsed_into_typed_metrics():
    parser = ProgressParser()
    update = parser.consume_line(STATS)

    assert update is not None
    assert update.values == {
        "frame": 250,
        "fps": 25.0,
        "q": -1.0,
        "size": "1024kB",
        "time": "00:00:10.00",
        "bitrate": 838.9,
        "speed": 1.0,
    }
    assert update.snapshot == update.values


def test_unrecognized_lines_are_ignored():
    parser = ProgressParser()
    garbage = [
        "Input #0, flv, from 'rtmp://example.com/live/in':",
        "  Duration: N/A, start: 0.000000, bitrate: N/A",
        "Stream mapping:",
        "  Stream #0:0 -> #0:0 (copy)",
        "Press [q] to stop, [?] for help",
        "",
        "\x00\xff not even text",
        "sequence=12 frames_total=3",
    ]
    for line in garbage:
        assert parser.consume_line(line) is None
    assert parser.snapshot == {}


def test_snapshot_keeps_latest_values_across_interleaved_garbage():
    parser = ProgressParser()
    lines = [
        "[flv @ 0x55d0] Packet mismatch 1 2 3",
        "frame=   10 fps=0.0 q=-1.0 size=       0kB time=00:00:00.40 bitrate=   0.0kbits/s speed=0.8x",
        "[rtmp @ 0x55d1] Server error: Already publishing",
        "frame=   60 fps= 30 q=-1.0 size=     256kB time=00:00:02.40 bitrate= 873.8kbits/s speed=1.2x",
        "some unrelated warning",
    ]
    for line in lines:
        parser.consume_line(line)

    snapshot = parser.snapshot
    assert snapshot["frame"] == 60
    assert snapshot["fps"] == 30.0
    assert snapshot["time"] == "00:00:02.40"
    assert snapshot["bitrate"] == 873.8
    assert snapshot["speed"] == 1.2
    assert set(snapshot) == {"frame", "fps", "q", "size", "time", "bitrate", "speed"}


def test_not_available_values_are_skipped_and_previous_kept():
    parser = ProgressParser()
    parser.consume_line("frame=  5 fps=25 size=10kB time=00:00:01.00 bitrate=80.0kbits/s speed=1.0x")
    update = parser.consume_line("frame=  6 fps=25 size=N/A time=00:00:01.04 bitrate=N/A speed=N/A")

    assert "bitrate" not in update.values
    assert update.snapshot["bitrate"] == 80.0
    assert update.snapshot["speed"] == 1.0
    assert update.snapshot["frame"] == 6


def test_final_lsize_line_reports_size():
    parser = ProgressParser()
    update = parser.consume_line("frame= 900 fps= 25 q=-1.0 Lsize=    4096kB time=00:00:36.00 bitrate= 932.1kbits/s speed=   1x")

    assert update.values["size"] == "4096kB"
    assert update.values["speed"] == 1.0


def test_feed_buffers_partial_lines_until_terminated():
    parser = ProgressParser()

    assert parser.feed("frame=  250 fps= 25 q=-1.0 si") == []
    assert parser.feed("ze=    1024kB time=00:00:10.00") == []
    lines = parser.feed(" bitrate= 838.9kbits/s speed=1.00x\r")

    assert lines == [STATS]


def test_feed_splits_on_carriage_returns_and_newlines():
    parser = ProgressParser()
    lines = parser.feed("Input #0, flv\r\nframe=1 fps=1\rframe=2 fps=1\r")
    lines += parser.feed("\nStream mapping:\ntrailing")

    assert lines == ["Input #0, flv", "frame=1 fps=1", "frame=2 fps=1", "Stream mapping:"]
    assert parser.flush() == ["trailing"]
    assert parser.flush() == []


def test_new_parser_starts_empty():
    first = ProgressParser()
    first.consume_line(STATS)

    assert ProgressParser().snapshot == {}
