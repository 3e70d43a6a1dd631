"""Locating and validating the files of a firmware package before an upgrade."""

from __future__ import annotations

import hashlib
import logging
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Iterable, Sequence

__all__ = [
    "CONTENTS_XML",
    "MD5_FILE",
    "MIBIB_PARTITION",
    "FirmwareError",
    "Ufile",
    "Md5Entry",
    "FirehoseFiles",
    "FirmwareImage",
    "UpgradeProgress",
    "parse_md5_line",
    "parse_md5_file",
    "find_md5_file",
    "md5_hex",
    "check_file_md5",
    "find_element",
    "find_programmers",
    "find_firehose_files",
    "read_image",
]

log = logging.getLogger(__name__)

CONTENTS_XML = "contents.xml"
MD5_FILE = "md5.txt"
MIBIB_PARTITION = "0:MIBIB"

_MD5_SKIP_MARKERS = ("START", "VERSION", "END")


class FirmwareError(Exception):
    """The firmware package is missing files or fails validation."""


@dataclass
class Ufile:
    """One partition image listed in the partition table."""

    name: str
    img_name: str
    partition_name: str | None = None


@dataclass(frozen=True)
class Md5Entry:
    """A file name and the checksum recorded for it in the md5 list."""

    filename: str
    md5: str


@dataclass(frozen=True)
class FirehoseFiles:
    """The files needed for a firehose upgrade."""

    patch_xml: str
    partition_complete_mbn: str
    rawprogram_nand_update_xml: str
    prog_nand_firehose_mbn: str


@dataclass
class FirmwareImage:
    """Everything learned about a firmware package by :func:`read_image`."""

    firmware_path: str
    contents_xml_path: str
    partition_nand_path: str
    ufiles: list[Ufile] = field(default_factory=list)
    partition_path: str | None = None
    nprg_path: str = ""
    enprg_path: str = ""
    md5_check_enabled: bool = False
    firehose_path: str = ""
    firehose_support: bool = False
    firehose: FirehoseFiles | None = None
    total_bytes: int = 0

    @property
    def download_bytes(self) -> int:
        """Size of every image except the partition table."""
        return sum(
            _file_size(u.img_name) for u in self.ufiles if u.name != MIBIB_PARTITION
        )


def _file_size(path: str) -> int:
    try:
        return os.stat(path).st_size
    except OSError:
        return 0


class UpgradeProgress:
    """Tracks how much of the firmware has been written so far."""

    def __init__(self, total: int) -> None:
        self.total = total
        self.done = 0

    def add_file(self, path: str) -> int:
        """Count a finished file; return the bytes done so far."""
        self.done += _file_size(path)
        return self.done

    def percent(self) -> float:
        """Fraction of the total done, from 0.0 upwards."""
        if self.total == 0:
            return 0.0
        return self.done / self.total


def parse_md5_line(line: str) -> Md5Entry | None:
    """Parse a ``path\\name:checksum`` line; None for headers and other lines."""
    if any(marker in line for marker in _MD5_SKIP_MARKERS):
        return None
    colon = line.rfind(":")
    backslash = line.rfind("\\")
    if colon < 0 or backslash < 0 or backslash >= colon:
        return None
    return Md5Entry(
        filename=line[backslash + 1:colon],
        md5=line[colon + 1:].rstrip("\r\n"),
    )


def parse_md5_file(path: str | os.PathLike[str]) -> list[Md5Entry]:
    """Read every entry from an md5 list file."""
    try:
        with open(path, encoding="latin-1") as handle:
            entries = [e for e in map(parse_md5_line, handle) if e is not None]
    except OSError as exc:
        raise FirmwareError(f"cannot read {path}: {exc}") from exc
    if not entries:
        raise FirmwareError(f"{path} holds no checksum entries")
    return entries


def find_md5_file(directory: str | os.PathLike[str]) -> str | None:
    """Path of the md5 list in ``directory``, matched without regard to case."""
    try:
        names = sorted(os.listdir(directory))
    except OSError:
        return None
    for name in names:
        if name.lower() == MD5_FILE:
            return f"{os.fspath(directory)}/{name}"
    return None


def md5_hex(path: str | os.PathLike[str]) -> str:
    """Upper-case hexadecimal MD5 digest of a file."""
    digest = hashlib.md5()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(64 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest().upper()


def check_file_md5(path: str, entries: Sequence[Md5Entry]) -> bool:
    """True if an entry names this file and records its checksum."""
    try:
        digest = md5_hex(path)
    except OSError:
        log.warning("calculate %s md5 failed.", path)
        return False
    if any(e.filename in path and digest in e.md5 for e in entries):
        log.info("md5 checking: %s pass", path)
        return True
    log.warning("md5 examine: %s fail", path)
    return False


def find_element(root: ET.Element, name: str) -> ET.Element | None:
    """First element named ``name`` in a depth-first walk from ``root``."""
    if root.tag == name:
        return root
    for child in root:
        found = find_element(child, name)
        if found is not None:
            return found
    return None


def _list_dir(directory: str) -> list[str]:
    try:
        return sorted(os.listdir(directory))
    except OSError as exc:
        raise FirmwareError(f"cannot open directory {directory}: {exc}") from exc


def find_programmers(directory: str) -> tuple[str | None, str | None]:
    """Names of the ``NPRG*`` and ``ENPRG*`` programmers in ``directory``."""
    nprg: str | None = None
    enprg: str | None = None
    for name in _list_dir(directory):
        if name.startswith("NPRG"):
            nprg = name
        if name.startswith("ENPRG"):
            enprg = name
    return nprg, enprg


def find_firehose_files(directory: str) -> FirehoseFiles:
    """Locate the patch, partition, rawprogram and programmer files of a firehose set."""
    found: dict[str, str] = {}
    for name in _list_dir(directory):
        path = f"{directory}/{name}"
        if "patch" in name:
            found["patch_xml"] = path
        elif "partition" in name:
            found["partition_complete_mbn"] = path
        elif "raw" in name:
            found["rawprogram_nand_update_xml"] = path
        elif "prog" in name:
            found["prog_nand_firehose_mbn"] = path
    keys = (
        "patch_xml",
        "partition_complete_mbn",
        "rawprogram_nand_update_xml",
        "prog_nand_firehose_mbn",
    )
    if any(key not in found or not os.path.exists(found[key]) for key in keys):
        log.error("firehose files can't access.")
        raise FirmwareError("firehose files can't access")
    log.info("firehose files check pass")
    return FirehoseFiles(**found)


def _load_xml(path: str) -> ET.Element:
    try:
        return ET.parse(path).getroot()
    except (ET.ParseError, OSError) as exc:
        raise FirmwareError(f"cannot parse {path}: {exc}") from exc


def _child_elements(element: ET.Element) -> list[ET.Element]:
    return [child for child in element if isinstance(child.tag, str)]


def _read_partitions(
    root: ET.Element, firmware_path: str, verify
) -> list[Ufile]:
    partitions = find_element(root, "partitions")
    if partitions is None:
        raise FirmwareError("no partitions element in the partition table")
    ufiles = []
    for entry in _child_elements(partitions):
        name: str | None = None
        img_name: str | None = None
        partition_name: str | None = None
        count = 0
        for item in _child_elements(entry):
            if item.tag == "name":
                name = item.text or ""
                count += 1
                _, colon, rest = name.partition(":")
                if colon:
                    partition_name = rest
                else:
                    log.error("parse partition name failed!")
            if item.tag == "img_name":
                img_name = f"{firmware_path}/{item.text or ''}"
                count += 1
                verify(img_name)
        if count == 2 and name is not None and img_name is not None:
            ufiles.append(Ufile(name, img_name, partition_name))
    return ufiles


def read_image(firmware_path: str) -> FirmwareImage:
    """Read and validate the firmware package rooted at ``firmware_path``."""
    contents_xml = f"{firmware_path}/{CONTENTS_XML}"
    if not os.path.exists(contents_xml):
        log.error("Not found contents.xml")
        raise FirmwareError("Not found contents.xml")

    entries: list[Md5Entry] = []
    md5_path = find_md5_file(firmware_path)
    if md5_path is not None:
        log.info("Detect %s file.", md5_path)
        try:
            entries = parse_md5_file(md5_path)
        except FirmwareError:
            log.warning("md5 file format error, ignore md5 check")
        else:
            log.info("md5 checking enable.")
    md5_enabled = bool(entries)

    def verify(path: str) -> None:
        if md5_enabled and not check_file_md5(path, entries):
            raise FirmwareError(f"md5 check failed for {path}")

    verify(contents_xml)
    partition_file = find_element(_load_xml(contents_xml), "partition_file")
    if partition_file is None:
        raise FirmwareError("no partition_file element in contents.xml")
    children = _child_elements(partition_file)
    if len(children) < 2:
        raise FirmwareError("partition_file element is incomplete")
    file_name = children[0].text or ""
    file_path = children[1].text or ""
    partition_nand_path = f"{firmware_path}/{file_path}{file_name}"
    image_dir = f"{firmware_path}/{file_path}"

    if not os.path.exists(partition_nand_path):
        log.error("Not found partition_nand.xml")
        raise FirmwareError("Not found partition_nand.xml")
    verify(partition_nand_path)

    ufiles = _read_partitions(_load_xml(partition_nand_path), image_dir, verify)
    image = FirmwareImage(
        firmware_path=image_dir,
        contents_xml_path=contents_xml,
        partition_nand_path=partition_nand_path,
        ufiles=ufiles,
        md5_check_enabled=md5_enabled,
    )
    for ufile in ufiles:
        if ufile.name == MIBIB_PARTITION:
            image.partition_path = ufile.img_name
        image.total_bytes += _file_size(ufile.img_name)

    nprg, enprg = find_programmers(image_dir)
    if nprg is None or enprg is None:
        raise FirmwareError("NPRG or ENPRG programmer missing")
    image.nprg_path = f"{image_dir}/{nprg}"
    image.enprg_path = f"{image_dir}/{enprg}"
    verify(image.nprg_path)
    verify(image.enprg_path)

    image.firehose_path = f"{image_dir}/firehose"
    if os.path.exists(image.firehose_path):
        log.info("find firehose directory!")
        image.firehose_support = True
        image.firehose = find_firehose_files(image.firehose_path)
    else:
        log.warning("firehose direcotry missing, firehose upgarde not supported")

    log.info("file total size: %d", image.download_bytes)
    return image


def _iter_images(ufiles: Iterable[Ufile]) -> Iterable[str]:
    return (u.img_name for u in ufiles)