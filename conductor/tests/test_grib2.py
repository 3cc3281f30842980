# Gridstream - GRIB2 Decoder Tests
# SPDX-License-Identifier: Apache-2.0

"""
Unit tests for GRIB2 message scanning, filtering and decoding.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
import logging

import numpy as np
import pytest

from conftest import build_grib2_message, temperature_field


async def decode(buffer, chunk_size=4096, overlap=0, **filters):
    from gridstream.decoders import DecodeFilters, DecodeJob, GRIB2Adapter

    job = DecodeJob(
        adapter=GRIB2Adapter(),
        filters=DecodeFilters(**filters),
        chunk_size=chunk_size,
        overlap=overlap,
    )
    return await job.run(buffer)


def parameters(result) -> list:
    return [m["message"]["parameter"] for m in result["messages"]]


@contextmanager
def grib_handle(raw: bytes):
    import eccodes

    gid = eccodes.codes_new_from_message(raw)
    try:
        yield gid
    finally:
        eccodes.codes_release(gid)


class TestReadMessage:
    """Test message summaries read through eccodes"""

    def test_summary(self):
        from gridstream.decoders.grib2 import read_message

        raw = build_grib2_message(temperature_field(), forecast_hours=6)
        with grib_handle(raw) as gid:
            message = read_message(gid, offset=0, length=len(raw))

        assert message.length == len(raw)
        assert message.parameter_key == "0,0,0"
        assert message.name == message.short_name
        assert message.reference_time == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert message.valid_time == datetime(2024, 1, 1, 6, tzinfo=timezone.utc)
        assert message.forecast_time == 6
        assert message.num_points == 12
        assert message.grid_template == 0
        assert message.packing_template == 0

        grid = message.grid
        assert (grid.ni, grid.nj) == (4, 3)
        assert grid.lat1 == pytest.approx(50.0)
        assert grid.lon2 == pytest.approx(300.0)
        assert grid.lat_range == pytest.approx((20.0, 50.0))

    def test_unknown_parameter(self):
        from gridstream.decoders.grib2 import read_message

        raw = build_grib2_message(temperature_field(), discipline=0, category=190, number=7)
        with grib_handle(raw) as gid:
            message = read_message(gid, offset=0, length=len(raw))

        assert message.name == "VAR0-190-7"
        assert message.parameter_key == "0,190,7"

    def test_southern_hemisphere(self):
        from gridstream.decoders.grib2 import read_grid

        raw = build_grib2_message(temperature_field(), lat1=-10.0, lon1=20.0, lat2=-40.0, lon2=50.0)
        with grib_handle(raw) as gid:
            grid = read_grid(gid)

        assert grid.lat1 == pytest.approx(-10.0)
        assert grid.lat2 == pytest.approx(-40.0)
        assert grid.lat_range == pytest.approx((-40.0, -10.0))
        assert grid.intersects((0.0, -30.0, 30.0, -20.0))


class TestGridExtent:
    """Test bbox intersection"""

    def test_antimeridian_bbox(self):
        from gridstream.decoders.grib2 import GridExtent

        grid = GridExtent(ni=3, nj=2, lat1=50.0, lon1=170.0, lat2=20.0, lon2=190.0,
                          di=10.0, dj=30.0, scanning_mode=0)
        assert grid.intersects((175.0, 20.0, -175.0, 55.0))
        assert not grid.intersects((-10.0, 20.0, 10.0, 55.0))
        assert not grid.intersects((175.0, 60.0, -175.0, 70.0))


class TestDecode:
    """Test full-buffer decoding"""

    @pytest.mark.asyncio
    async def test_all_messages(self, grib2_bytes):
        result = await decode(grib2_bytes)

        assert result["metadata"]["message_count"] == 3
        assert parameters(result) == ["0,0,0", "0,0,0", "0,2,2"]
        names = [m["message"]["name"] for m in result["messages"]]
        assert names[0] == names[1] != names[2]
        assert result["messages"][0]["data"] == temperature_field().ravel().tolist()
        assert result["messages"][1]["data"] == temperature_field(base=280.0).ravel().tolist()
        assert result["messages"][0]["chunk_info"]["chunk_index"] == 0
        assert result["messages"][0]["message"]["packing_type"] == "grid_simple"

    @pytest.mark.asyncio
    async def test_variable_filter(self, grib2_bytes):
        result = await decode(grib2_bytes, variables=("0,0,0",))
        assert parameters(result) == ["0,0,0", "0,0,0"]
        assert result["metadata"]["variables"] == ["0,0,0"]

    @pytest.mark.asyncio
    async def test_variable_selectors(self, grib2_bytes):
        """Short name, long name, paramId and discipline,category,number all select"""
        everything = await decode(grib2_bytes)
        wind = everything["messages"][2]["message"]

        selectors = [wind["name"], wind["name"].upper(), wind["long_name"], "0,2,2"]
        if wind["param_id"] is not None:
            selectors.append(str(wind["param_id"]))
        for selector in selectors:
            result = await decode(grib2_bytes, variables=(selector,))
            assert parameters(result) == ["0,2,2"], selector

    @pytest.mark.asyncio
    async def test_time_filter_uses_valid_time(self, grib2_bytes):
        result = await decode(
            grib2_bytes,
            time_start=datetime(2024, 1, 1, 3, tzinfo=timezone.utc),
            time_end=datetime(2024, 1, 1, 9, tzinfo=timezone.utc),
        )
        assert result["metadata"]["message_count"] == 1
        assert result["messages"][0]["message"]["valid_time"] == "2024-01-01T06:00:00+00:00"
        assert result["metadata"]["time_range"]["start"] == "2024-01-01T03:00:00+00:00"

    @pytest.mark.asyncio
    async def test_bbox_intersecting(self, grib2_bytes):
        result = await decode(grib2_bytes, bbox=(-130.0, 20.0, -60.0, 55.0))
        assert result["metadata"]["message_count"] == 3
        assert result["metadata"]["bbox"] == [-130.0, 20.0, -60.0, 55.0]

    @pytest.mark.asyncio
    async def test_bbox_disjoint(self, grib2_bytes):
        """No message intersects: empty list, count 0"""
        result = await decode(grib2_bytes, bbox=(0.0, -10.0, 10.0, 10.0))
        assert result["messages"] == []
        assert result["metadata"]["message_count"] == 0

    @pytest.mark.asyncio
    async def test_bbox_across_antimeridian(self):
        raw = build_grib2_message(temperature_field(), lon1=170.0, lon2=190.0)

        crossing = await decode(raw, bbox=(175.0, 20.0, -175.0, 55.0))
        assert crossing["metadata"]["message_count"] == 1

        elsewhere = await decode(raw, bbox=(-10.0, 20.0, 10.0, 55.0))
        assert elsewhere["metadata"]["message_count"] == 0

    @pytest.mark.asyncio
    async def test_bitmap_gaps_become_none(self):
        values = temperature_field()
        bitmap = np.ones(values.shape, dtype=bool)
        bitmap[0, 1] = False
        bitmap[2, 3] = False

        result = await decode(build_grib2_message(values, bitmap=bitmap))
        data = result["messages"][0]["data"]

        assert len(data) == 12
        assert data[1] is None
        assert data[11] is None
        assert data[0] == 270.0
        assert data[10] == 280.0

    @pytest.mark.asyncio
    async def test_decimal_scale(self):
        values = np.array([[1.5, 1.6], [2.0, 2.1]])
        result = await decode(build_grib2_message(values, decimal_scale=1, nbits=8))
        assert result["messages"][0]["data"] == pytest.approx([1.5, 1.6, 2.0, 2.1])

    @pytest.mark.asyncio
    async def test_constant_field(self):
        """Zero bits per value: every point equals the reference value"""
        values = np.full((2, 2), 101325.0)
        result = await decode(build_grib2_message(values, nbits=0, category=3, number=0))
        assert result["messages"][0]["data"] == [101325.0] * 4
        assert parameters(result) == ["0,3,0"]

    @pytest.mark.asyncio
    async def test_junk_between_messages(self):
        msg = build_grib2_message(temperature_field())
        buffer = b"junk" + msg + b"\x00" * 10 + b"GRIB" + msg
        result = await decode(buffer)
        assert result["metadata"]["message_count"] == 2

    @pytest.mark.asyncio
    async def test_progress_stages(self, grib2_bytes):
        from gridstream.decoders import DecodeFilters, DecodeJob, GRIB2Adapter

        updates = []
        job = DecodeJob(GRIB2Adapter(), DecodeFilters(), chunk_size=200, on_progress=updates.append)
        await job.run(grib2_bytes)

        assert updates[0] == {"stage": "loading", "progress": 10}
        assert updates[-1] == {"stage": "complete", "progress": 100}
        progress = [u["progress"] for u in updates]
        assert progress == sorted(progress)
        assert all(u["stage"] == "processing" for u in updates[1:-1])


class TestExtract:
    """Test the per-message extract step"""

    @pytest.mark.asyncio
    async def test_every_message_goes_through_extract(self, grib2_bytes):
        from gridstream.decoders import DecodeFilters, DecodeJob, GRIB2Adapter

        seen = []

        class Recording(GRIB2Adapter):
            def extract(self, chunk, spec, filters):
                values = super().extract(chunk, spec, filters)
                seen.append((spec[0].parameter_key, values is not None))
                return values

        job = DecodeJob(Recording(), DecodeFilters(variables=("0,2,2",)), chunk_size=4096)
        result = await job.run(grib2_bytes)

        assert seen == [("0,0,0", False), ("0,0,0", False), ("0,2,2", True)]
        assert parameters(result) == ["0,2,2"]

    @pytest.mark.asyncio
    async def test_chunk_consumed_by_read_ahead_is_not_scanned(self):
        """A window wholly covered by the previous message is ruled out up front"""
        from gridstream.decoders import DecodeFilters, DecodeJob, GRIB2Adapter

        msg = build_grib2_message(temperature_field())
        scanned = []

        class Recording(GRIB2Adapter):
            def find_messages(self, chunk):
                scanned.append(chunk.info.index)
                return super().find_messages(chunk)

        adapter = Recording()
        job = DecodeJob(adapter, DecodeFilters(), chunk_size=50, overlap=len(msg))
        result = await job.run(msg + msg)

        assert result["metadata"]["message_count"] == 2
        first_chunk_of_second = len(msg) // 50
        assert scanned == [0, first_chunk_of_second]
        assert adapter.skipped_records == 0


class TestChunkBoundaries:
    """Test messages straddling window boundaries"""

    @pytest.mark.asyncio
    async def test_straddling_message_with_overlap(self):
        """Read-ahead completes the message; it is decoded exactly once"""
        msg = build_grib2_message(temperature_field())
        buffer = msg + build_grib2_message(temperature_field(base=280.0))
        chunk_size = len(msg) + 50

        result = await decode(buffer, chunk_size=chunk_size, overlap=len(msg))

        assert result["metadata"]["processed_chunks"] == 2
        assert result["metadata"]["message_count"] == 2
        assert [m["message"]["offset"] for m in result["messages"]] == [0, len(msg)]
        assert result["messages"][1]["chunk_info"]["chunk_index"] == 0

    @pytest.mark.asyncio
    async def test_straddling_message_without_overlap(self, caplog):
        """Without read-ahead the straddling message is skipped with a warning"""
        from gridstream.decoders import DecodeFilters, DecodeJob, GRIB2Adapter

        msg = build_grib2_message(temperature_field())
        buffer = msg + build_grib2_message(temperature_field(base=280.0))
        job = DecodeJob(GRIB2Adapter(), DecodeFilters(), chunk_size=len(msg) + 50, overlap=0)

        with caplog.at_level(logging.WARNING, logger="gridstream.decoders.grib2"):
            result = await job.run(buffer)

        assert result["metadata"]["message_count"] == 1
        assert result["messages"][0]["message"]["offset"] == 0
        assert "straddles" in caplog.text
        assert job.adapter.skipped_offsets == [len(msg)]
        assert job.adapter.skipped_records == 1

    @pytest.mark.asyncio
    async def test_marker_cut_by_window_end(self):
        """A ``GRIB`` marker split across windows counts as a skipped message"""
        from gridstream.decoders import DecodeFilters, DecodeJob, GRIB2Adapter

        msg = build_grib2_message(temperature_field())
        buffer = msg + msg
        job = DecodeJob(GRIB2Adapter(), DecodeFilters(), chunk_size=len(msg) + 2, overlap=0)
        result = await job.run(buffer)

        assert result["metadata"]["message_count"] == 1
        assert job.adapter.skipped_offsets == [len(msg)]

    @pytest.mark.asyncio
    async def test_message_per_chunk(self):
        msg = build_grib2_message(temperature_field())
        buffer = msg * 4
        result = await decode(buffer, chunk_size=len(msg))

        assert result["metadata"]["message_count"] == 4
        assert [m["chunk_info"]["chunk_index"] for m in result["messages"]] == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_truncated_last_message(self, caplog):
        msg = build_grib2_message(temperature_field())
        buffer = msg + msg[:-30]

        with caplog.at_level(logging.WARNING, logger="gridstream.decoders.grib2"):
            result = await decode(buffer)

        assert result["metadata"]["message_count"] == 1


class TestFailures:
    """Test decode failures"""

    @pytest.mark.asyncio
    async def test_undecodable_payload(self):
        """A data section eccodes cannot decode fails the job with the message offset"""
        from gridstream.decoders import DecodeFilters, DecodeJob, DecodeState, GRIB2Adapter
        from gridstream.errors import FormatDecodeError

        raw = build_grib2_message(temperature_field(), packing_template=40)
        job = DecodeJob(GRIB2Adapter(), DecodeFilters(), chunk_size=4096)

        with pytest.raises(FormatDecodeError) as exc:
            await job.run(raw)

        assert exc.value.format == "grib2"
        assert exc.value.chunk_index == 0
        assert "offset 0" in str(exc.value)
        assert job.state is DecodeState.FAILED
        assert DecodeState.HEADER not in job.transitions

    @pytest.mark.asyncio
    async def test_filtered_message_is_not_decoded(self):
        """Messages failing the filter never reach value decoding"""
        raw = build_grib2_message(temperature_field(), packing_template=40)
        result = await decode(raw, variables=("0,2,2",))
        assert result["metadata"]["message_count"] == 0
