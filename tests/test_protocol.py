import io

import pytest

from qflash.fastboot.protocol import FastbootError, FastbootProtocol, Transport


class FakeTransport(Transport):
    def __init__(self, replies, short_write_after=None, fail_read=False):
        self.replies = list(replies)
        self.writes = []
        self.closed = False
        self.short_write_after = short_write_after
        self.fail_read = fail_read

    def read(self, length):
        if self.fail_read:
            raise OSError(5, "Input/output error")
        return self.replies.pop(0)[:length]

    def write(self, data):
        self.writes.append(bytes(data))
        if self.short_write_after is not None and len(self.writes) > self.short_write_after:
            return len(data) - 1
        return len(data)

    def close(self):
        self.closed = True


def test_command_sends_text_and_accepts_okay():
    transport = FakeTransport([b"OKAY"])
    FastbootProtocol(transport).command("reboot")
    assert transport.writes == [b"reboot"]
    assert transport.replies == []


def test_command_response_returns_text_after_okay():
    transport = FakeTransport([b"OKAY0.5"])
    assert FastbootProtocol(transport).command_response("getvar:version") == "0.5"
    assert transport.writes == [b"getvar:version"]


def test_info_lines_are_skipped(capsys):
    transport = FakeTransport([b"INFOhello", b"OKAYdone"])
    assert FastbootProtocol(transport).command_response("oem x") == "done"
    assert "(bootloader) hello" in capsys.readouterr().err


def test_remote_failure_with_message():
    transport = FakeTransport([b"FAILbad partition"])
    proto = FastbootProtocol(transport)
    with pytest.raises(FastbootError, match="remote: bad partition"):
        proto.command("erase:foo")
    assert proto.last_error == "remote: bad partition"
    assert transport.closed is False


def test_remote_failure_without_message():
    transport = FakeTransport([b"FAIL"])
    with pytest.raises(FastbootError, match="^remote failure$"):
        FastbootProtocol(transport).command("erase:foo")


def test_malformed_status_closes_transport():
    transport = FakeTransport([b"OK"])
    with pytest.raises(FastbootError, match=r"status malformed \(2 bytes\)"):
        FastbootProtocol(transport).command("reboot")
    assert transport.closed is True


def test_unknown_status_code():
    transport = FakeTransport([b"WHAT"])
    with pytest.raises(FastbootError, match="unknown status code"):
        FastbootProtocol(transport).command("reboot")
    assert transport.closed is True


def test_data_not_allowed_for_plain_command():
    transport = FakeTransport([b"DATA00000004"])
    with pytest.raises(FastbootError, match="unknown status code"):
        FastbootProtocol(transport).command("reboot")


def test_status_read_failure():
    transport = FakeTransport([], fail_read=True)
    with pytest.raises(FastbootError, match="status read failed"):
        FastbootProtocol(transport).command("reboot")
    assert transport.closed is True


def test_command_too_large():
    transport = FakeTransport([])
    with pytest.raises(FastbootError, match="command too large"):
        FastbootProtocol(transport).command("x" * 65)
    assert transport.writes == []


def test_download_bytes():
    transport = FakeTransport([b"DATA00000004", b"OKAY"])
    FastbootProtocol(transport).download_data(b"abcd", 4)
    assert transport.writes == [b"download:00000004", b"abcd"]
    assert transport.replies == []


def test_download_size_defaults_to_length():
    transport = FakeTransport([b"DATA00000003", b"OKAY"])
    FastbootProtocol(transport).download_data(b"xyz")
    assert transport.writes == [b"download:00000003", b"xyz"]


def test_download_from_file_object():
    payload = b"0123456789"
    transport = FakeTransport([b"DATA0000000a", b"OKAY"])
    FastbootProtocol(transport).download_data(io.BytesIO(payload), len(payload))
    assert transport.writes[0] == b"download:0000000a"
    assert b"".join(transport.writes[1:]) == payload


def test_download_device_requests_too_much():
    transport = FakeTransport([b"DATA00000010"])
    with pytest.raises(FastbootError, match="data size too large"):
        FastbootProtocol(transport).download_data(b"abcd", 4)
    assert transport.closed is True


def test_download_short_transfer():
    transport = FakeTransport([b"DATA00000004", b"OKAY"], short_write_after=1)
    with pytest.raises(FastbootError, match="short transfer"):
        FastbootProtocol(transport).download_data(b"abcd", 4)
    assert transport.closed is True


def test_download_final_failure_is_reported():
    transport = FakeTransport([b"DATA00000004", b"FAILflash error"])
    with pytest.raises(FastbootError, match="remote: flash error"):
        FastbootProtocol(transport).download_data(b"abcd", 4)