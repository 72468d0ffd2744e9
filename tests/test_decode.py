"""Tests for frame extraction: log metadata, fallback splitting and strategy selection."""

from __future__ import annotations

import asyncio

import cv2
import pytest

from frameblur.errors import ConfigurationError, DecodeError, InvalidStateError
from frameblur.media.decode import (
    FfmpegFrameDecoder,
    MetadataLogReader,
    frames_per_batch,
    read_decoder_config,
)
from frameblur.media.encode import FfmpegSegmentEncoder
from frameblur.media.video import Video
from tests.conftest import FakeMediaTool, make_frame

WIDTH, HEIGHT = 8, 6


def probe_result(codec: str = "h264", fps: str = "5/1", duration: str = "2.0") -> dict:
    return {
        "streams": [
            {"codec_type": "audio", "codec_name": "aac"},
            {"codec_type": "video", "codec_name": codec, "width": WIDTH, "height": HEIGHT,
             "pix_fmt": "yuv420p", "avg_frame_rate": fps, "r_frame_rate": fps,
             "duration": duration},
        ],
        "format": {"duration": duration},
    }


def ffmpeg_decoding(frame_count: int, fps: int = 5, frame_bytes: int | None = None):
    """Script ffmpeg: each slice returns the raw frames inside [ss, ss + t)."""
    size = frame_bytes or WIDTH * HEIGHT * 3

    def handler(args, tool):
        if "-ss" not in args:
            tool.write_file(args[-1], b"")
            return
        if args[args.index("-loglevel") + 1] == "verbose":
            tool._emit_log("  Duration: 00:00:02.00, start: 0.000000, bitrate: 8 kb/s")
            tool._emit_log(f"[graph 0 input from stream 0:0 @ 0x55d] w:{WIDTH} h:{HEIGHT} "
                           f"pixfmt:yuv420p tb:1/{fps} fr:{fps}/1 sar:1/1")
        start = float(args[args.index("-ss") + 1])
        duration = float(args[args.index("-t") + 1])
        first = round(start * fps)
        last = min(frame_count, round((start + duration) * fps))
        data = b"".join(bytes([i]) * size for i in range(first, last))
        tool.write_file(args[-1], data)

    return handler


def make_video(tmp_path, handler=None, probe=None, **kwargs) -> tuple[Video, FakeMediaTool]:
    tool = FakeMediaTool(tmp_path / "work", handler=handler, probe_result=probe)
    video = Video(tool, segment_seconds=2.0, **kwargs)
    video.load_bytes("my clip.mp4", b"not really a video")
    return video, tool


class FakeCapture:
    """cv2.VideoCapture stand-in serving ``frames`` solid frames."""

    frames = 4
    opens = True
    fail_after: int | None = None
    released = 0

    def __init__(self, path, api, params):
        self.accel = params[1]
        self.served = 0

    def isOpened(self):
        return FakeCapture.opens

    def read(self):
        if FakeCapture.fail_after is not None and self.served >= FakeCapture.fail_after:
            raise cv2.error("decoder crashed")
        if self.served >= FakeCapture.frames:
            return False, None
        self.served += 1
        return True, make_frame(WIDTH, HEIGHT, value=self.served)

    def release(self):
        FakeCapture.released += 1


@pytest.fixture
def capture(monkeypatch):
    FakeCapture.frames = 4
    FakeCapture.opens = True
    FakeCapture.fail_after = None
    FakeCapture.released = 0
    monkeypatch.setattr(cv2, "VideoCapture", FakeCapture)
    return FakeCapture


class TestBatchMath:
    def test_frames_per_batch(self):
        assert frames_per_batch(2.0, 5.0) == 10
        assert frames_per_batch(2.0, 30000 / 1001) == 60
        assert frames_per_batch(0.01, 5.0) == 1


class TestMetadataLogReader:
    def test_parses_duration_and_stream(self):
        reader = MetadataLogReader()
        reader("  Duration: 00:01:02.50, start: 0.000000, bitrate: 1205 kb/s")
        assert reader.metadata is None
        reader("[graph 0 input from stream 0:0 @ 0x1] w:1920 h:1080 pixfmt:yuv420p "
               "tb:1/30000 fr:30000/1001 sar:1/1")

        meta = reader.metadata
        assert (meta.width, meta.height, meta.pix_fmt) == (1920, 1080, "yuv420p")
        assert meta.fps_ratio == "30000/1001"
        assert meta.fps == pytest.approx(29.97, abs=0.01)
        assert meta.duration == pytest.approx(62.5)

    def test_ignores_zero_frame_rate(self):
        reader = MetadataLogReader()
        reader("w:10 h:10 pixfmt:gray tb:1/1 fr:0/1")
        assert reader.metadata is None


class TestReadDecoderConfig:
    def test_reads_video_track(self, tmp_path):
        tool = FakeMediaTool(tmp_path, probe_result=probe_result(fps="30000/1001"))
        config = read_decoder_config(tool, "x.mp4")
        assert config.codec == "h264"
        assert (config.width, config.height) == (WIDTH, HEIGHT)
        assert config.metadata().fps_ratio == "30000/1001"

    def test_unreadable_container(self, tmp_path):
        assert read_decoder_config(FakeMediaTool(tmp_path), "x.mp4") is None

    def test_unknown_frame_rate(self, tmp_path):
        tool = FakeMediaTool(tmp_path, probe_result=probe_result(fps="0/0"))
        assert read_decoder_config(tool, "x.mp4") is None


class TestFfmpegFrameDecoder:
    def test_ten_frames_at_five_fps(self, tmp_path):
        tool = FakeMediaTool(tmp_path, handler=ffmpeg_decoding(10))
        resolved = []
        decoder = FfmpegFrameDecoder(tool, "input.mp4", 2.0, "")

        frames = list(decoder.frames(lambda: False, resolved.append))

        assert [f.index for f in frames] == list(range(10))
        assert {f.batch for f in frames} == {0}
        assert frames[3].image.array.shape == (HEIGHT, WIDTH, 3)
        assert frames[3].image.array[0, 0, 0] == 3
        assert len(resolved) == 1
        assert resolved[0].fps == 5.0
        # one slice with frames, one empty slice ending the sequence
        assert len(tool.calls) == 2
        assert tool.calls[1][tool.calls[1].index("-loglevel") + 1] == "error"
        assert tool.list_dir() == []

    def test_batches_follow_segments(self, tmp_path):
        tool = FakeMediaTool(tmp_path, handler=ffmpeg_decoding(25))
        decoder = FfmpegFrameDecoder(tool, "input.mp4", 2.0, "")
        frames = list(decoder.frames(lambda: False, lambda meta: None))
        assert len(frames) == 25
        assert [f.batch for f in frames[9:12]] == [0, 1, 1]
        assert frames[-1].batch == 2

    def test_frames_are_writable(self, tmp_path):
        tool = FakeMediaTool(tmp_path, handler=ffmpeg_decoding(2))
        decoder = FfmpegFrameDecoder(tool, "input.mp4", 2.0, "")
        frame = next(decoder.frames(lambda: False, lambda meta: None))
        frame.image.array[0, 0] = 255

    def test_partial_frame_is_an_error(self, tmp_path):
        tool = FakeMediaTool(tmp_path, handler=ffmpeg_decoding(3, frame_bytes=10))
        decoder = FfmpegFrameDecoder(tool, "input.mp4", 2.0, "")
        with pytest.raises(DecodeError, match="multiple of w\\*h\\*bpp"):
            list(decoder.frames(lambda: False, lambda meta: None))

    def test_stop_flag(self, tmp_path):
        tool = FakeMediaTool(tmp_path, handler=ffmpeg_decoding(10))
        decoder = FfmpegFrameDecoder(tool, "input.mp4", 2.0, "")
        produced = []
        for frame in decoder.frames(lambda: len(produced) >= 3, lambda meta: None):
            produced.append(frame)
        assert len(produced) == 3
        assert len(tool.calls) == 1


class TestVideoExtraction:
    def test_accelerated_path_skips_ffmpeg(self, tmp_path, capture):
        video, tool = make_video(tmp_path, probe=probe_result())

        frames = list(video.extract_frames())

        assert len(frames) == 4
        assert tool.calls == []
        assert capture.released == 1
        assert video.metadata(timeout=0).fps_ratio == "5/1"

    def test_fallback_when_decoder_rejects_codec(self, tmp_path, capture):
        capture.opens = False
        video, tool = make_video(tmp_path, handler=ffmpeg_decoding(10),
                                 probe=probe_result(codec="av1"))

        frames = list(video.extract_frames())

        assert [f.index for f in frames] == list(range(10))
        assert len(tool.calls) == 2
        assert asyncio.run(video.resolve_metadata()).fps == 5.0

    def test_fallback_when_container_unreadable(self, tmp_path, capture):
        video, tool = make_video(tmp_path, handler=ffmpeg_decoding(3))
        assert len(list(video.extract_frames())) == 3

    def test_accelerated_decode_error(self, tmp_path, capture):
        capture.fail_after = 2
        video, tool = make_video(tmp_path, probe=probe_result())
        with pytest.raises(DecodeError):
            list(video.extract_frames())
        assert capture.released == 1
        assert tool.calls == []

    def test_stop_during_accelerated_decode(self, tmp_path, capture):
        video, tool = make_video(tmp_path, probe=probe_result())
        produced = []
        for frame in video.extract_frames(lambda: len(produced) >= 2):
            produced.append(frame)
        assert len(produced) == 2
        assert tool.calls == []
        assert capture.released == 1

    def test_accelerated_decode_disabled(self, tmp_path, capture):
        video, tool = make_video(tmp_path, handler=ffmpeg_decoding(3),
                                 probe=probe_result(), accelerated_decode=False)
        assert len(list(video.extract_frames())) == 3
        assert len(tool.calls) == 2


class TestVideo:
    def test_load_bytes(self, tmp_path):
        video, tool = make_video(tmp_path)
        assert video.file_name == "my clip.mp4"
        assert video.file_size == len(b"not really a video")
        assert video.input_name == "my_clip/input.mp4"
        assert tool.read_file(video.input_name) == b"not really a video"
        assert not video.is_image

    def test_load_file(self, tmp_path):
        source = tmp_path / "photo.JPG"
        source.write_bytes(b"jpeg")
        video = Video(FakeMediaTool(tmp_path / "work"))
        assert video.load_file(source) == ("photo.JPG", 4)
        assert video.is_image

    def test_segment_seconds_must_be_positive(self, tmp_path):
        with pytest.raises(ConfigurationError):
            Video(FakeMediaTool(tmp_path), segment_seconds=0)

    def test_encoder_needs_metadata(self, tmp_path):
        video, _ = make_video(tmp_path)
        with pytest.raises(InvalidStateError):
            video.new_encoder()

    def test_fallback_encoder_and_interval(self, tmp_path, capture):
        video, _ = make_video(tmp_path, probe=probe_result(), accelerated_encode=False)
        list(video.extract_frames())

        encoder = video.new_encoder()

        assert isinstance(encoder, FfmpegSegmentEncoder)
        assert encoder.key_frame_interval == 10

    def test_render_remuxes_with_source_streams(self, tmp_path):
        listings = []

        def handler(args, tool):
            listings.append(tool.read_file(args[args.index("-i") + 1]).decode())
            tool.write_file(args[-1], b"final")

        video, tool = make_video(tmp_path, handler=handler)
        output = video.render(["my_clip/encode_chunk_0.ts", "my_clip/encode_chunk_1.ts"],
                              tmp_path / "out" / "result.mp4")

        args = tool.calls[0]
        assert args[args.index("-f") + 1] == "concat"
        assert "my_clip/input.mp4" in args
        assert args[args.index("-map_metadata") + 1] == "1"
        assert args[args.index("-c") + 1] == "copy"
        assert args[args.index("-movflags") + 1] == "+faststart"
        assert listings[0] == "file 'encode_chunk_0.ts'\nfile 'encode_chunk_1.ts'\n"
        assert output.read_bytes() == b"final"
        assert not tool.path("my_clip/segments.txt").exists()

    def test_cleanup_removes_work_files(self, tmp_path):
        video, tool = make_video(tmp_path)
        video.cleanup()
        assert tool.list_dir() == []
