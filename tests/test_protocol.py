"""Tests for protocol messages and the message channel."""

import asyncio
import threading

import pytest

from conftest import make_gradient


class TestMessageHeaders:
    """Test outbound JSON headers."""

    def test_result_header_has_no_pixels(self):
        from upscale_server.protocol import ResultMessage

        header = ResultMessage(id=5, output=make_gradient(4, 3)).to_dict()
        assert header == {"type": "result", "id": 5,
                          "output": {"width": 4, "height": 3, "channels": 4}}

    def test_progress_and_diagnostics_headers(self):
        from upscale_server.protocol import DiagnosticsMessage, ProgressMessage

        assert ProgressMessage(id=1, progress=40, status="progress").to_dict() == {
            "type": "progress", "id": 1, "progress": 40, "status": "progress"}
        assert DiagnosticsMessage(id=1, fp16_enabled=False).to_dict() == {
            "type": "diagnostics", "id": 1, "fp16_enabled": False}

    def test_result_shares_buffer(self):
        """Results hand over the output buffer without copying it."""
        from upscale_server.protocol import MessageChannel

        received = []
        output = make_gradient(4, 4)
        MessageChannel(received.append).result(1, output)

        assert received[0].output.data is output.data


class TestMessageChannel:
    """Test message delivery."""

    def test_progress_sink_failure_is_dropped(self, caplog):
        from upscale_server.protocol import MessageChannel

        def broken_sink(message):
            raise RuntimeError("sink closed")

        channel = MessageChannel(broken_sink)
        channel.progress(1, 10, "progress")
        channel.diagnostics(1, True)

        assert "Dropped progress message" in caplog.text

    def test_error_sink_failure_propagates(self):
        from upscale_server.protocol import MessageChannel

        def broken_sink(message):
            raise RuntimeError("sink closed")

        with pytest.raises(RuntimeError):
            MessageChannel(broken_sink).error(1, "failed")

    def test_posts_from_threads_delivered_on_loop(self):
        from upscale_server.protocol import MessageChannel

        delivered = []

        async def scenario():
            loop = asyncio.get_running_loop()
            loop_thread = threading.get_ident()
            channel = MessageChannel(
                lambda m: delivered.append((m.progress, threading.get_ident() == loop_thread)))
            channel.bind(loop)

            await asyncio.to_thread(channel.progress, 1, 50)
            channel.progress(1, 100)
            await asyncio.sleep(0)

        asyncio.run(scenario())

        assert delivered == [(50, True), (100, True)]
