"""Finding and talking to fastboot devices through Linux usbfs."""

from __future__ import annotations

import fcntl
import logging
import os
import re
import struct
import time
from array import array
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable

from qflash.fastboot.protocol import Transport

__all__ = [
    "SYSFS_USB_DEVICES",
    "MAX_USBFS_BULK_SIZE",
    "UsbInterfaceInfo",
    "UsbMatch",
    "UsbHandle",
    "is_valid_sysfs_name",
    "parse_usb_descriptors",
    "split_field",
    "create_dir",
    "executable_dir",
    "find_usb_device",
    "usb_open",
]

log = logging.getLogger(__name__)

SYSFS_USB_DEVICES = "/sys/bus/usb/devices"

# The largest bulk transfer usbfs accepts in one request.
MAX_USBFS_BULK_SIZE = 16 * 1024
MAX_RETRIES = 5

USB_DT_DEVICE = 0x01
USB_DT_CONFIG = 0x02
USB_DT_INTERFACE = 0x04
USB_DT_ENDPOINT = 0x05
USB_DT_SS_ENDPOINT_COMP = 0x30

USB_DT_DEVICE_SIZE = 18
USB_DT_CONFIG_SIZE = 9
USB_DT_INTERFACE_SIZE = 9
USB_DT_ENDPOINT_SIZE = 7
USB_DT_SS_EP_COMP_SIZE = 6

USB_ENDPOINT_XFERTYPE_MASK = 0x03
USB_ENDPOINT_XFER_BULK = 2
USB_ENDPOINT_DIR_MASK = 0x80

_DEVICE = struct.Struct("<BBHBBBBHHHBBBB")
_CONFIG = struct.Struct("<BBHBBBBB")
_INTERFACE = struct.Struct("<BBBBBBBBB")
_ENDPOINT = struct.Struct("<BBBBHB")

# struct usbdevfs_bulktransfer { unsigned ep, len, timeout; void *data; }
_BULK_FORMAT = "IIIP"
_IOC_READ = 2
_IOC_WRITE = 1


def _ioc(direction: int, nr: int, size: int) -> int:
    return (direction << 30) | (size << 16) | (ord("U") << 8) | nr


USBDEVFS_BULK = _ioc(_IOC_READ | _IOC_WRITE, 2, struct.calcsize(_BULK_FORMAT))
USBDEVFS_CLAIMINTERFACE = _ioc(_IOC_READ, 15, struct.calcsize("I"))

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


@dataclass
class UsbInterfaceInfo:
    """What is known about one interface of a USB device."""

    dev_vendor: int = 0
    dev_product: int = 0
    dev_class: int = 0
    dev_subclass: int = 0
    dev_protocol: int = 0
    ifc_class: int = 0
    ifc_subclass: int = 0
    ifc_protocol: int = 0
    has_bulk_in: bool = False
    has_bulk_out: bool = False
    writable: bool = False
    serial_number: str = ""
    device_path: str = ""


@dataclass(frozen=True)
class UsbMatch:
    """The interface a match callback accepted, with its bulk endpoints (-1 if absent)."""

    info: UsbInterfaceInfo
    ep_in: int
    ep_out: int
    interface: int


MatchCallback = Callable[[UsbInterfaceInfo], bool]


def is_valid_sysfs_name(name: str) -> bool:
    """True for sysfs device names such as ``1-1`` or ``2-1.4``."""
    if not name or not name[0].isdigit():
        return False
    return all(ch.isdigit() or ch in ".-" for ch in name[1:])


def _check(data: bytes, pos: int, remaining: int, dtype: int, size: int) -> bool:
    if remaining < size:
        return False
    length = data[pos]
    if length < size or length > remaining:
        return False
    return data[pos + 1] == dtype


def parse_usb_descriptors(
    data: bytes,
    sysfs_name: str,
    writable: bool,
    serial_number: str,
    callback: MatchCallback,
) -> UsbMatch | None:
    """Walk a device's raw descriptors and return the first interface ``callback`` accepts."""
    pos = 0
    remaining = len(data)
    if not _check(data, pos, remaining, USB_DT_DEVICE, USB_DT_DEVICE_SIZE):
        return None
    (dev_len, _, _, dev_class, dev_subclass, dev_protocol, _, vendor, product,
     _, _, _, iserial, _) = _DEVICE.unpack_from(data, pos)
    pos += dev_len
    remaining -= dev_len

    if not _check(data, pos, remaining, USB_DT_CONFIG, USB_DT_CONFIG_SIZE):
        return None
    cfg_len, _, _, num_interfaces, _, _, _, _ = _CONFIG.unpack_from(data, pos)
    pos += cfg_len
    remaining -= cfg_len

    base_info = UsbInterfaceInfo(
        dev_vendor=vendor,
        dev_product=product,
        dev_class=dev_class,
        dev_subclass=dev_subclass,
        dev_protocol=dev_protocol,
        writable=writable,
        serial_number=serial_number if iserial else "",
        device_path=f"usb:{sysfs_name}",
    )

    for _ in range(num_interfaces):
        while remaining > 0:
            if _check(data, pos, remaining, USB_DT_INTERFACE, USB_DT_INTERFACE_SIZE):
                break
            step = data[pos]
            if step == 0:
                return None
            pos += step
            remaining -= step
        if remaining <= 0:
            return None

        (ifc_len, _, ifc_number, _, num_endpoints, ifc_class, ifc_subclass,
         ifc_protocol, _) = _INTERFACE.unpack_from(data, pos)
        pos += ifc_len
        remaining -= ifc_len

        ep_in = -1
        ep_out = -1
        for _ in range(num_endpoints):
            while remaining > 0:
                if _check(data, pos, remaining, USB_DT_ENDPOINT, USB_DT_ENDPOINT_SIZE):
                    break
                step = data[pos]
                if step == 0:
                    return None
                pos += step
                remaining -= step
            if remaining <= 0:
                break

            ep_len, _, address, attributes, _, _ = _ENDPOINT.unpack_from(data, pos)
            pos += ep_len
            remaining -= ep_len

            if attributes & USB_ENDPOINT_XFERTYPE_MASK != USB_ENDPOINT_XFER_BULK:
                continue
            if address & USB_ENDPOINT_DIR_MASK:
                ep_in = address
            else:
                ep_out = address

            # USB 3.0 devices follow the endpoint with a companion descriptor.
            if _check(data, pos, remaining, USB_DT_SS_ENDPOINT_COMP, USB_DT_SS_EP_COMP_SIZE):
                pos += USB_DT_SS_EP_COMP_SIZE
                remaining -= USB_DT_SS_EP_COMP_SIZE

        info = replace(
            base_info,
            ifc_class=ifc_class,
            ifc_subclass=ifc_subclass,
            ifc_protocol=ifc_protocol,
            has_bulk_in=ep_in != -1,
            has_bulk_out=ep_out != -1,
        )
        if callback(info):
            return UsbMatch(info=info, ep_in=ep_in, ep_out=ep_out, interface=ifc_number)
    return None


def split_field(text: str, marker: str) -> str:
    """Return the text after ``marker`` up to the next newline."""
    start = text.find(marker)
    if start < 0:
        raise ValueError(f"{marker!r} not found")
    end = text.find("\n", start)
    if end < 0:
        raise ValueError(f"no line end after {marker!r}")
    return text[start + len(marker):end]


def create_dir(path: str | os.PathLike[str]) -> None:
    """Create ``path`` and any missing parents with mode 0755."""
    target = Path(path)
    for directory in [*reversed(target.parents), target]:
        if directory.is_dir():
            continue
        try:
            directory.mkdir(mode=0o755)
        except OSError:
            log.error("mkdir %s", directory)
            raise


def executable_dir() -> str:
    """Directory of the running executable with a trailing slash, or ``""``."""
    try:
        path = os.readlink(f"/proc/{os.getpid()}/exe")
    except OSError:
        return ""
    head, sep, _ = path.rpartition("/")
    return head + sep if sep else path


def _read_sysfs_string(base: str, sysfs_name: str, node: str, size: int) -> str | None:
    try:
        with open(os.path.join(base, sysfs_name, node), "rb") as handle:
            return handle.read(size - 1).decode("latin-1")
    except OSError:
        return None


def _read_sysfs_number(base: str, sysfs_name: str, node: str) -> int | None:
    text = _read_sysfs_string(base, sysfs_name, node, 16)
    if text is None:
        return None
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else None


def _devfs_name(base: str, sysfs_name: str) -> str | None:
    busnum = _read_sysfs_number(base, sysfs_name, "busnum")
    if busnum is None or busnum < 0:
        return None
    devnum = _read_sysfs_number(base, sysfs_name, "devnum")
    if devnum is None or devnum < 0:
        return None
    return f"/dev/bus/usb/{busnum:03d}/{devnum:03d}"


def _read_serial(base: str, sysfs_name: str) -> str:
    text = _read_sysfs_string(base, sysfs_name, "serial", 256)
    if not text:
        return ""
    return text[:-1] if text.endswith("\n") else text


def _open_device(devname: str) -> tuple[int, bool] | None:
    try:
        return os.open(devname, os.O_RDWR), True
    except OSError:
        pass
    try:
        return os.open(devname, os.O_RDONLY), False
    except OSError:
        return None


class UsbHandle(Transport):
    """An open usbfs device with a claimed interface."""

    retry_delay = 1.0
    """Seconds to wait between retries of a failed bulk read."""

    def __init__(self, fname: str, fd: int, ep_in: int, ep_out: int) -> None:
        self.fname = fname
        self.fd = fd
        self.ep_in = ep_in
        self.ep_out = ep_out

    def _bulk(self, endpoint: int, buffer: array, length: int) -> int:
        address, _ = buffer.buffer_info()
        request = bytearray(struct.pack(_BULK_FORMAT, endpoint, length, 0, address))
        return fcntl.ioctl(self.fd, USBDEVFS_BULK, request, True)

    def write(self, data: bytes) -> int:
        """Send ``data`` on the bulk out endpoint and return the bytes sent."""
        if self.ep_out == 0:
            raise OSError("no bulk out endpoint")
        view = memoryview(bytes(data))
        if not view:
            try:
                self._bulk(self.ep_out, array("B"), 0)
            except OSError as exc:
                log.error("zero length bulk write failed: %s", exc)
                raise
            return 0
        count = 0
        while view:
            chunk = view[:MAX_USBFS_BULK_SIZE]
            buffer = array("B", chunk.tobytes())
            sent = self._bulk(self.ep_out, buffer, len(chunk))
            if sent != len(chunk):
                raise OSError(f"short bulk write ({sent} of {len(chunk)} bytes)")
            count += sent
            view = view[len(chunk):]
        return count

    def read(self, length: int) -> bytes:
        """Read up to ``length`` bytes from the bulk in endpoint."""
        if self.ep_in == 0:
            raise OSError("no bulk in endpoint")
        received = bytearray()
        while length > 0:
            xfer = min(length, MAX_USBFS_BULK_SIZE)
            buffer = array("B", bytes(xfer))
            retry = 0
            while True:
                try:
                    count = self._bulk(self.ep_in, buffer, xfer)
                    break
                except OSError as exc:
                    log.debug("bulk read failed: %s", exc)
                    retry += 1
                    if retry > MAX_RETRIES:
                        raise
                    time.sleep(self.retry_delay)
            received += buffer[:count].tobytes()
            length -= count
            if count < xfer:
                break
        return bytes(received)

    def close(self) -> None:
        """Close the device descriptor; closing twice is harmless."""
        fd, self.fd = self.fd, -1
        if fd >= 0:
            os.close(fd)


def find_usb_device(base: str, callback: MatchCallback) -> UsbHandle | None:
    """Open the first device under sysfs ``base`` with an interface ``callback`` accepts."""
    try:
        names = sorted(os.listdir(base))
    except OSError:
        return None

    for name in names:
        if not is_valid_sysfs_name(name):
            continue
        devname = _devfs_name(base, name)
        if devname is None:
            continue
        opened = _open_device(devname)
        if opened is None:
            continue
        fd, writable = opened
        try:
            descriptors = os.read(fd, 1024)
        except OSError:
            os.close(fd)
            continue
        match = parse_usb_descriptors(
            descriptors, name, writable, _read_serial(base, name), callback
        )
        if match is None:
            os.close(fd)
            continue
        try:
            fcntl.ioctl(fd, USBDEVFS_CLAIMINTERFACE, struct.pack("I", match.interface))
        except OSError:
            os.close(fd)
            continue
        return UsbHandle(devname, fd, match.ep_in & 0xFF, match.ep_out & 0xFF)
    return None


def usb_open(callback: MatchCallback) -> UsbHandle | None:
    """Open the first matching device on the system's USB bus."""
    return find_usb_device(SYSFS_USB_DEVICES, callback)