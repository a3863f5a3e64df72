"""Tests for the connection handler, the stores and the listener."""

from __future__ import annotations

import asyncio

import pytest

from datamanager.client import DataClient
from datamanager.daemon import SharedStore, Store, handle, serve, start_server
from datamanager.errors import DecodeError, TransportError
from datamanager.message import (
    Absent,
    Float,
    GetDataResponse,
    Int,
    LabeledValue,
    SetDataResponse,
    Status,
    Text,
)

SET_SP1_NE1 = '{"command":"SetDataRequest","tag":"ABC","params":[{"label":"SP1","value":3.0},{"label":"NE1","value":10}]}\n'
GET_NE1_SP1 = '{"command":"GetDataRequest","tag":"123","params":["NE1","SP1"]}\n'


class TestStore:
    def test_lookup_preserves_request_order_and_duplicates(self):
        store = Store()
        store.update([LabeledValue("a", Int(1)), LabeledValue("b", Int(2))])
        status, results = store.lookup(["b", "a", "b"])
        assert status is Status.OK
        assert [r.label for r in results] == ["b", "a", "b"]

    def test_later_duplicate_wins(self):
        store = Store()
        store.update([LabeledValue("SP1", Int(1)), LabeledValue("SP1", Int(2))])
        assert store.get("SP1") == Int(2)
        assert len(store) == 1

    def test_empty_lookup_is_ok(self):
        assert Store().lookup([]) == (Status.OK, [])

    @pytest.mark.asyncio
    async def test_shared_store_serializes_requests(self):
        store = SharedStore()
        await asyncio.gather(*(
            store.set_data([LabeledValue("n", Int(i)), LabeledValue(f"k{i}", Int(i))])
            for i in range(20)
        ))
        status, results = await store.get_data([f"k{i}" for i in range(20)])
        assert status is Status.OK
        assert len(store) == 21


class TestServe:
    @pytest.mark.asyncio
    async def test_set_then_get(self, make_reader, writer):
        await serve(make_reader(SET_SP1_NE1, GET_NE1_SP1), writer)
        set_resp, get_resp = writer.messages()
        assert set_resp == SetDataResponse(tag="ABC", status=Status.OK)
        assert get_resp == GetDataResponse(
            tag="123",
            status=Status.OK,
            results=[LabeledValue("NE1", Int(10)), LabeledValue("SP1", Float(3.0))],
        )

    @pytest.mark.asyncio
    async def test_missing_label(self, make_reader, writer):
        reader = make_reader(
            '{"command":"SetDataRequest","params":[{"label":"SP1","value":3.0}]}\n',
            '{"command":"GetDataRequest","params":["NE1","SP1"]}\n',
        )
        await serve(reader, writer)
        get_resp = writer.messages()[1]
        assert get_resp.tag is None
        assert get_resp.status is Status.NOT_FOUND
        assert get_resp.results == [LabeledValue("NE1", Absent()), LabeledValue("SP1", Float(3.0))]

    @pytest.mark.asyncio
    async def test_null_value_is_present(self, make_reader, writer):
        reader = make_reader(
            '{"command":"SetDataRequest","params":[{"label":"X","value":null}]}\n',
            '{"command":"GetDataRequest","params":["X"]}\n',
        )
        await serve(reader, writer)
        get_resp = writer.messages()[1]
        assert get_resp.status is Status.OK
        assert get_resp.results == [LabeledValue("X", Absent())]

    @pytest.mark.asyncio
    async def test_tag_is_echoed_verbatim(self, make_reader, writer):
        reader = make_reader(
            '{"command":"GetDataRequest","tag":"","params":[]}\n',
            '{"command":"GetDataRequest","params":[]}\n',
            '{"command":"SetDataRequest","tag":"t-9","params":[]}\n',
        )
        await serve(reader, writer)
        assert [m.tag for m in writer.messages()] == ["", None, "t-9"]
        assert b'"tag"' not in writer.lines()[1]

    @pytest.mark.asyncio
    async def test_store_passed_in_is_used(self, make_reader, writer):
        store = Store()
        await serve(make_reader('{"command":"SetDataRequest","params":[{"label":"u","value":"murata"}]}\n'), writer, store=store)
        assert store.get("u") == Text("murata")

    @pytest.mark.asyncio
    async def test_responses_from_peer_are_ignored(self, make_reader, writer):
        store = Store()
        reader = make_reader(
            '{"command":"SetDataResponse","status":"OK"}\n',
            '{"command":"GetDataResponse","status":"OK","results":[{"label":"a","value":1}]}\n',
        )
        await serve(reader, writer, store=store)
        assert writer.writes == []
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_malformed_line_stops_connection(self, make_reader, writer):
        reader = make_reader(
            SET_SP1_NE1,
            "not json\n",
            GET_NE1_SP1,
        )
        with pytest.raises(DecodeError):
            await serve(reader, writer)
        assert [type(m) for m in writer.messages()] == [SetDataResponse]

    @pytest.mark.asyncio
    async def test_skip_malformed_keeps_going(self, make_reader, writer):
        await serve(make_reader(SET_SP1_NE1, "not json\n", GET_NE1_SP1), writer, skip_malformed=True)
        assert [m.tag for m in writer.messages()] == ["ABC", "123"]

    @pytest.mark.asyncio
    async def test_escaped_lone_surrogate_stops_connection(self, make_reader, writer):
        bad = b'{"command":"SetDataRequest","tag":"s","params":[{"label":"X","value":"\\ud800"}]}\n'
        with pytest.raises(DecodeError, match="not valid unicode"):
            await serve(make_reader(bad, GET_NE1_SP1), writer)
        assert writer.writes == []

    @pytest.mark.asyncio
    async def test_send_failure_aborts(self, make_reader, failing_writer):
        with pytest.raises(TransportError):
            await serve(make_reader(SET_SP1_NE1, GET_NE1_SP1), failing_writer)
        assert len(failing_writer.writes) == 1


class TestHandle:
    @pytest.mark.asyncio
    async def test_closes_stream_on_eof(self, make_reader, writer):
        await handle(make_reader(SET_SP1_NE1), writer)
        assert writer.closed

    @pytest.mark.asyncio
    async def test_closes_stream_and_raises_on_error(self, make_reader, writer):
        with pytest.raises(DecodeError):
            await handle(make_reader("{oops\n"), writer)
        assert writer.closed
        assert writer.writes == []


class TestListener:
    @pytest.mark.asyncio
    async def test_round_trip_over_tcp(self, daemon):
        async with await DataClient.connect("127.0.0.1", daemon) as client:
            set_resp = await client.set([("SP1", Float(3.0)), ("NE1", Int(10))], tag="ABC")
            assert set_resp == SetDataResponse(tag="ABC", status=Status.OK)
            get_resp = await client.get(["NE1", "SP1"], tag="123")
        assert get_resp.status is Status.OK
        assert get_resp.results == [LabeledValue("NE1", Int(10)), LabeledValue("SP1", Float(3.0))]

    @pytest.mark.asyncio
    async def test_each_connection_has_its_own_store(self, daemon):
        async with await DataClient.connect("127.0.0.1", daemon) as first:
            await first.set([("SP1", Float(3.0))])
            async with await DataClient.connect("127.0.0.1", daemon) as second:
                resp = await second.get(["SP1"])
        assert resp.status is Status.NOT_FOUND

    @pytest.mark.asyncio
    async def test_shared_store_is_visible_across_connections(self, shared_daemon):
        async with await DataClient.connect("127.0.0.1", shared_daemon) as first:
            await first.set([("SP1", Float(3.0))])
        async with await DataClient.connect("127.0.0.1", shared_daemon) as second:
            resp = await second.get(["SP1"])
        assert resp.status is Status.OK
        assert resp.results == [LabeledValue("SP1", Float(3.0))]

    @pytest.mark.asyncio
    async def test_malformed_line_closes_only_that_connection(self, daemon):
        reader, writer = await asyncio.open_connection("127.0.0.1", daemon)
        writer.write(b"not json\n")
        await writer.drain()
        assert await asyncio.wait_for(reader.read(), timeout=5) == b""
        writer.close()
        await writer.wait_closed()

        async with await DataClient.connect("127.0.0.1", daemon) as client:
            resp = await client.set([("ok", Int(1))])
        assert resp.status is Status.OK

    @pytest.mark.asyncio
    async def test_value_larger_than_default_stream_limit(self, daemon):
        big = Text("x" * 100_000)
        async with await DataClient.connect("127.0.0.1", daemon) as client:
            set_resp = await client.set([("big", big)], tag="B")
            get_resp = await client.get(["big"], tag="G")
        assert set_resp.status is Status.OK
        assert get_resp.results == [LabeledValue("big", big)]

    @pytest.mark.asyncio
    async def test_line_over_configured_limit_closes_connection(self):
        server = await start_server(host="127.0.0.1", port=0, max_line_bytes=1024)
        port = server.sockets[0].getsockname()[1]
        try:
            async with await DataClient.connect("127.0.0.1", port) as client:
                with pytest.raises(TransportError):
                    await client.set([("big", Text("x" * 4096))])
        finally:
            server.close()
            await server.wait_closed()
