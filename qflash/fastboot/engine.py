"""A queue of fastboot actions executed in order against a device."""

from __future__ import annotations

import enum
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Sequence, TextIO

from qflash.fastboot.protocol import FastbootError, FastbootProtocol

__all__ = ["ActionKind", "Action", "ActionQueue", "match_values"]

_CMD_SIZE = 64
_GETVAR = "getvar:"


class ActionKind(enum.Enum):
    """What an action does on the wire."""

    DOWNLOAD = 1
    COMMAND = 2
    QUERY = 3
    NOTICE = 4


Handler = Callable[["Action", "str | None", str], bool]


@dataclass
class Action:
    """One queued step; ``result`` holds a saved query answer."""

    kind: ActionKind
    cmd: str = ""
    msg: str | None = None
    data: Any = None
    size: int = 0
    product: str | None = None
    values: tuple[str, ...] = ()
    pretty_name: str | None = None
    result: str | None = None
    start: float = -1.0
    handler: Handler | None = field(default=None, repr=False, compare=False)


def match_values(response: str, values: Sequence[str]) -> bool:
    """True if ``response`` equals a value, or starts with one ending in ``*``."""
    for value in values:
        if len(value) > 1 and value.endswith("*"):
            if response.startswith(value[:-1]):
                return True
        elif value == response:
            return True
    return False


def _payload_size(data: Any, size: int | None) -> int:
    if size is not None:
        return size
    if isinstance(data, (bytes, bytearray, memoryview)):
        return len(data)
    raise ValueError("size is required when data is a file")


class ActionQueue:
    """Collects fastboot actions and runs them one after another."""

    def __init__(self, output: TextIO | None = None, current_product: str = "") -> None:
        self._output = output
        self.current_product = current_product
        self._actions: list[Action] = []

    @property
    def _out(self) -> TextIO:
        return self._output if self._output is not None else sys.stderr

    def __len__(self) -> int:
        return len(self._actions)

    def __iter__(self) -> Iterator[Action]:
        return iter(self._actions)

    def _queue(self, kind: ActionKind, cmd: str = "", **fields: Any) -> Action:
        if len(cmd.encode("latin-1")) >= _CMD_SIZE:
            raise ValueError(
                f"Command length ({len(cmd)}) exceeds maximum size ({_CMD_SIZE})"
            )
        fields.setdefault("handler", self._cb_default)
        action = Action(kind=kind, cmd=cmd, **fields)
        self._actions.append(action)
        return action

    # -- callbacks -------------------------------------------------------

    def _report_okay(self, action: Action) -> None:
        split = time.monotonic()
        print(f"OKAY [{split - action.start:7.3f}s]", file=self._out)
        action.start = split

    def _cb_default(self, action: Action, error: str | None, resp: str) -> bool:
        if error is not None:
            print(f"FAILED ({error})", file=self._out)
            return False
        self._report_okay(action)
        return True

    def _cb_check(self, action: Action, error: str | None, resp: str, invert: bool) -> bool:
        out = self._out
        if error is not None:
            print(f"FAILED ({error})", file=out)
            return False
        if action.product and action.product != self.current_product:
            split = time.monotonic()
            print(
                f"IGNORE, product is {self.current_product} required only for "
                f"{action.product} [{split - action.start:7.3f}s]",
                file=out,
            )
            action.start = split
            return True
        yes = match_values(resp, action.values)
        if invert:
            yes = not yes
        if yes:
            self._report_okay(action)
            return True
        print("FAILED\n", file=out)
        print(f"Device {action.cmd[len(_GETVAR):]} is '{resp}'.", file=out)
        wanted = " or ".join(f"'{value}'" for value in action.values)
        print(f"Update {'rejects' if invert else 'requires'} {wanted}.\n", file=out)
        return False

    def _cb_require(self, action: Action, error: str | None, resp: str) -> bool:
        return self._cb_check(action, error, resp, False)

    def _cb_reject(self, action: Action, error: str | None, resp: str) -> bool:
        return self._cb_check(action, error, resp, True)

    def _cb_display(self, action: Action, error: str | None, resp: str) -> bool:
        if error is not None:
            print(f"{action.cmd} FAILED ({error})", file=self._out)
            return False
        print(f"{action.pretty_name}: {resp}", file=self._out)
        return True

    def _cb_save(self, action: Action, error: str | None, resp: str) -> bool:
        if error is not None:
            print(f"{action.cmd} FAILED ({error})", file=self._out)
            return False
        action.result = resp
        return True

    def _cb_do_nothing(self, action: Action, error: str | None, resp: str) -> bool:
        print(file=self._out)
        return True

    # -- queueing --------------------------------------------------------

    def queue_erase(self, partition: str) -> Action:
        """Queue erasing a partition."""
        return self._queue(
            ActionKind.COMMAND, f"erase:{partition}", msg=f"erasing '{partition}'"
        )

    def queue_flash(self, partition: str, data: Any, size: int | None = None) -> Action:
        """Queue sending an image and writing it to a partition."""
        size = _payload_size(data, size)
        self._queue(
            ActionKind.DOWNLOAD,
            data=data,
            size=size,
            msg=f"sending '{partition}' ({size // 1024} KB)",
        )
        return self._queue(
            ActionKind.COMMAND, f"flash:{partition}", msg=f"writing '{partition}'"
        )

    def queue_require(
        self, product: str | None, var: str, invert: bool, values: Sequence[str]
    ) -> Action:
        """Queue a check that a variable matches (or, inverted, does not match) values."""
        return self._queue(
            ActionKind.QUERY,
            f"{_GETVAR}{var}",
            product=product,
            values=tuple(values),
            msg=f"checking {var}",
            handler=self._cb_reject if invert else self._cb_require,
        )

    def queue_display(self, var: str, pretty_name: str) -> Action:
        """Queue printing a variable under a readable name."""
        return self._queue(
            ActionKind.QUERY,
            f"{_GETVAR}{var}",
            pretty_name=pretty_name,
            handler=self._cb_display,
        )

    def queue_query_save(self, var: str) -> Action:
        """Queue reading a variable; its value lands in the action's ``result``."""
        return self._queue(ActionKind.QUERY, f"{_GETVAR}{var}", handler=self._cb_save)

    def queue_reboot(self) -> Action:
        """Queue a reboot whose outcome is not checked."""
        return self._queue(
            ActionKind.COMMAND, "reboot", msg="rebooting", handler=self._cb_do_nothing
        )

    def queue_command(self, cmd: str, msg: str | None) -> Action:
        """Queue a plain command."""
        return self._queue(ActionKind.COMMAND, cmd, msg=msg)

    def queue_download(self, name: str, data: Any, size: int | None = None) -> Action:
        """Queue sending data to the device."""
        return self._queue(
            ActionKind.DOWNLOAD,
            data=data,
            size=_payload_size(data, size),
            msg=f"downloading '{name}'",
        )

    def queue_notice(self, notice: str) -> Action:
        """Queue a line of text printed when reached."""
        return self._queue(ActionKind.NOTICE, data=notice)

    # -- running ---------------------------------------------------------

    def execute(self, protocol: FastbootProtocol) -> None:
        """Run every action in order; raise FastbootError at the first failure."""
        out = self._out
        first: float | None = None
        failure: str | None = None
        for action in self._actions:
            action.start = time.monotonic()
            if first is None:
                first = action.start
            if action.msg is not None:
                print(f"{action.msg}...", file=out)
            if action.kind is ActionKind.NOTICE:
                print(action.data, file=out)
                continue
            error: str | None = None
            resp = ""
            try:
                if action.kind is ActionKind.DOWNLOAD:
                    protocol.download_data(action.data, action.size)
                elif action.kind is ActionKind.COMMAND:
                    protocol.command(action.cmd)
                else:
                    resp = protocol.command_response(action.cmd)
            except FastbootError as exc:
                error = str(exc)
            handler = action.handler or self._cb_default
            if not handler(action, error, resp):
                failure = error or f"'{action.cmd}' check failed"
                break
        started = first if first is not None else time.monotonic()
        print(f"finished. total time: {time.monotonic() - started:.3f}s", file=out)
        if failure is not None:
            raise FastbootError(failure)

    def clear(self) -> None:
        """Drop every queued action."""
        self._actions.clear()