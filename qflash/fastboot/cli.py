"""Command line front end for flashing devices over fastboot."""

from __future__ import annotations

import contextlib
import os
import re
import sys
from dataclasses import dataclass
from typing import Sequence

from qflash.fastboot.engine import ActionQueue
from qflash.fastboot.protocol import FastbootError, FastbootProtocol
from qflash.fastboot.usb import UsbInterfaceInfo, executable_dir, usb_open

__all__ = [
    "FastbootUsageError",
    "Requirement",
    "KNOWN_VENDORS",
    "MAX_OPTIONS",
    "match_fastboot",
    "find_item",
    "parse_requirement_line",
    "setup_requirements",
    "queue_info_dump",
    "usage",
    "main",
]

KNOWN_VENDORS = frozenset(
    {
        0x18D1,  # Google
        0x8087,  # Intel
        0x0451,
        0x0502,
        0x0FCE,  # Sony Ericsson
        0x05C6,  # Qualcomm
        0x22B8,  # Motorola
        0x0955,  # Nvidia
        0x413C,  # DELL
        0x2314,  # INQ Mobile
        0x0B05,  # Asus
        0x0BB4,  # HTC
    }
)

MAX_OPTIONS = 32

_ITEM_FILES = {
    "boot": "boot.img",
    "recovery": "recovery.img",
    "system": "system.img",
    "userdata": "userdata.img",
    "info": "android-info.txt",
}

_SPACE = " \t\n\r\v\f"
_LEADING_SIGN = re.compile(r"[ \t\n\r\v\f]*([+-]?)")
_DIGITS = {8: "01234567", 10: "0123456789", 16: "0123456789abcdefABCDEF"}

USAGE = (
    "usage: fastboot [ <option> ] <command>\n"
    "\n"
    "commands:\n"
    "  update <filename>                        reflash device from update.zip\n"
    "  flashall                                 flash boot + recovery + system\n"
    "  flash <partition> [ <filename> ]         write a file to a flash partition\n"
    "  erase <partition>                        erase a flash partition\n"
    "  getvar <variable>                        display a bootloader variable\n"
    "  boot <kernel> [ <ramdisk> ]              download and boot kernel\n"
    "  flash:raw boot <kernel> [ <ramdisk> ]    create bootimage and flash it\n"
    "  devices                                  list all connected devices\n"
    "  continue                                 continue with autoboot\n"
    "  reboot                                   reboot device normally\n"
    "  reboot-bootloader                        reboot device into bootloader\n"
    "  help                                     show this help message\n"
    "\n"
    "options:\n"
    "  -w                                       erase userdata and cache\n"
    "  -s <serial number>                       specify device serial number\n"
    "  -p <product>                             specify product name\n"
    "  -c <cmdline>                             override kernel commandline\n"
    "  -i <vendor id>                           specify a custom USB vendor id\n"
    "  -b <base_addr>                           specify a custom kernel base address\n"
    "  -n <page size>                           specify the nand page size. default: 2048\n"
)


class FastbootUsageError(Exception):
    """The command line cannot be carried out; ``show_usage`` asks for the help text."""

    def __init__(self, message: str = "", show_usage: bool = False) -> None:
        super().__init__(message)
        self.show_usage = show_usage


@dataclass(frozen=True)
class Requirement:
    """A device variable check from an ``android-info.txt`` style line."""

    product: str | None
    name: str
    invert: bool
    values: tuple[str, ...]


def match_fastboot(
    info: UsbInterfaceInfo, serial: str | None = None, vendor_id: int = 0
) -> bool:
    """True if the interface is a fastboot interface of a known (or given) vendor."""
    vendor_ok = bool(vendor_id) and info.dev_vendor == vendor_id
    if not vendor_ok and info.dev_vendor not in KNOWN_VENDORS:
        return False
    if (info.ifc_class, info.ifc_subclass, info.ifc_protocol) != (0xFF, 0x42, 0x03):
        return False
    if serial and serial not in (info.serial_number, info.device_path):
        return False
    return True


def find_item(item: str, product: str | None = None) -> str | None:
    """Work out the image file for a well-known partition name."""
    filename = _ITEM_FILES.get(item)
    if filename is None:
        print(f"unknown partition '{item}'", file=sys.stderr)
        return None
    if product:
        return f"{executable_dir()}../../../target/product/{product}/{filename}"
    directory = os.environ.get("ANDROID_PRODUCT_OUT")
    if not directory:
        raise FastbootUsageError(
            "neither -p product specified nor ANDROID_PRODUCT_OUT set"
        )
    return f"{directory}/{filename}"


def parse_requirement_line(line: str) -> Requirement | None:
    """Parse one requirement line; None when it holds no ``name=value`` part."""
    product: str | None = None
    invert = False
    name = line
    if name.startswith("reject "):
        name = name[len("reject "):]
        invert = True
    elif name.startswith("require "):
        name = name[len("require "):]
    elif name.startswith("require-for-product:"):
        rest = name[len("require-for-product:"):]
        product, found, name = rest.partition(" ")
        if not found:
            raise ValueError(f"no variable after product in {line!r}")

    name, found, value_text = name.partition("=")
    if not found:
        return None
    values = tuple(v.strip(_SPACE) for v in value_text.split("|", MAX_OPTIONS - 1))
    name = name.strip(_SPACE)
    if name == "board":
        # work around an unfortunate name mismatch
        name = "product"
    return Requirement(product=product, name=name, invert=invert, values=values)


def setup_requirements(queue: ActionQueue, data: bytes | str) -> list[Requirement]:
    """Queue a check for every newline-terminated requirement line in ``data``."""
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).decode("latin-1")
    *lines, _ = data.split("\n")
    requirements = []
    for line in lines:
        requirement = parse_requirement_line(line)
        if requirement is None:
            continue
        queue.queue_require(
            requirement.product, requirement.name, requirement.invert, requirement.values
        )
        requirements.append(requirement)
    return requirements


def queue_info_dump(queue: ActionQueue) -> None:
    """Queue printing the bootloader and baseband versions and the serial number."""
    queue.queue_notice("--------------------------------------------")
    queue.queue_display("version-bootloader", "Bootloader Version...")
    queue.queue_display("version-baseband", "Baseband Version.....")
    queue.queue_display("serialno", "Serial Number........")
    queue.queue_notice("--------------------------------------------")


def usage() -> None:
    """Print the help text to standard error."""
    sys.stderr.write(USAGE)


def _strtoul(text: str, base: int) -> tuple[int, str]:
    """Parse a leading unsigned number like strtoul; return the value and the rest."""
    match = _LEADING_SIGN.match(text)
    assert match is not None
    sign = match.group(1)
    pos = match.end()
    head = text[pos:pos + 3]
    if base in (0, 16) and head[:2].lower() == "0x" and head[2:3] and head[2] in _DIGITS[16]:
        pos += 2
        base = 16
    elif base == 0:
        base = 8 if text[pos:pos + 1] == "0" else 10
    end = pos
    while end < len(text) and text[end] in _DIGITS[base]:
        end += 1
    if end == pos:
        return 0, text
    value = int(text[pos:end], base)
    if sign == "-":
        value = -value & 0xFFFFFFFFFFFFFFFF
    return value, text[end:]


def _list_devices(serial: str | None, vendor_id: int) -> None:
    def report(info: UsbInterfaceInfo) -> bool:
        if match_fastboot(info, serial, vendor_id):
            name = info.serial_number if info.writable else "no permissions"
            print(f"{name or '????????????'}\tfastboot")
        return False

    usb_open(report)


def _run(args: list[str], stack: contextlib.ExitStack) -> int:
    if not args:
        usage()
        return 1
    serial = os.environ.get("ANDROID_SERIAL")
    if args[0] == "devices":
        _list_devices(serial, 0)
        return 0
    if args[0] == "help":
        usage()
        return 0

    queue = ActionQueue()
    stack.callback(queue.clear)
    product: str | None = None
    vendor_id = 0
    wants_wipe = wants_reboot = wants_reboot_bootloader = False

    def require(count: int) -> None:
        if len(args) < count:
            raise FastbootUsageError(show_usage=True)

    while args:
        arg = args[0]
        if arg == "-w":
            wants_wipe = True
            args = args[1:]
        elif arg == "-b":
            require(2)
            _strtoul(args[1], 16)
            args = args[2:]
        elif arg == "-n":
            require(2)
            page_size, _ = _strtoul(args[1], 0)
            if not page_size & 0xFFFFFFFF:
                raise FastbootUsageError("invalid page size")
            args = args[2:]
        elif arg == "-s":
            require(2)
            serial = args[1]
            args = args[2:]
        elif arg == "-p":
            require(2)
            product = args[1]
            args = args[2:]
        elif arg == "-c":
            require(2)
            args = args[2:]
        elif arg == "-i":
            require(2)
            value, rest = _strtoul(args[1], 0)
            if rest or value & ~0xFFFF:
                raise FastbootUsageError(f"invalid vendor id '{args[1]}'")
            vendor_id = value
            args = args[2:]
        elif arg == "getvar":
            require(2)
            queue.queue_display(args[1], args[1])
            args = args[2:]
        elif arg == "erase":
            require(2)
            queue.queue_erase(args[1])
            args = args[2:]
        elif arg == "signature":
            require(2)
            try:
                with open(args[1], "rb") as handle:
                    signature = handle.read()
            except OSError:
                raise FastbootUsageError(f"could not load '{args[1]}'") from None
            if len(signature) != 256:
                raise FastbootUsageError("signature must be 256 bytes")
            queue.queue_download("signature", signature)
            queue.queue_command("signature", "installing signature")
            args = args[2:]
        elif arg == "reboot":
            wants_reboot = True
            args = args[1:]
        elif arg == "reboot-bootloader":
            wants_reboot_bootloader = True
            args = args[1:]
        elif arg == "continue":
            queue.queue_command("continue", "resuming boot")
            args = args[1:]
        elif arg == "flash":
            require(2)
            partition = args[1]
            if len(args) > 2:
                filename: str | None = args[2]
                args = args[3:]
            else:
                filename = find_item(partition, product)
                args = args[2:]
            if filename is None:
                raise FastbootUsageError(
                    f"cannot determine image filename for '{partition}'"
                )
            try:
                image = stack.enter_context(open(filename, "rb"))
                size = os.fstat(image.fileno()).st_size
            except OSError:
                raise FastbootUsageError(f"cannot load '{filename}'") from None
            queue.queue_flash(partition, image, size)
        elif arg == "oem":
            if len(args) > 1:
                queue.queue_command(" ".join(args), "")
            args = []
        else:
            raise FastbootUsageError(show_usage=True)

    if wants_wipe:
        queue.queue_erase("userdata")
        queue.queue_erase("cache")
    if wants_reboot:
        queue.queue_reboot()
    elif wants_reboot_bootloader:
        queue.queue_command("reboot-bootloader", "rebooting into bootloader")

    handle = usb_open(lambda info: match_fastboot(info, serial, vendor_id))
    if handle is None:
        raise FastbootUsageError("cannot open device")
    stack.callback(handle.close)
    try:
        queue.execute(FastbootProtocol(handle))
    except FastbootError:
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Run the fastboot command line; return the process exit status."""
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        with contextlib.ExitStack() as stack:
            return _run(args, stack)
    except FastbootUsageError as exc:
        if exc.show_usage:
            usage()
        else:
            print(f"error: {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())