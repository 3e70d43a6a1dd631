import hashlib
import os
import xml.etree.ElementTree as ET

import pytest

from qflash.firmware import (
    FirehoseFiles,
    FirmwareError,
    Md5Entry,
    UpgradeProgress,
    check_file_md5,
    find_element,
    find_firehose_files,
    find_md5_file,
    find_programmers,
    md5_hex,
    parse_md5_file,
    parse_md5_line,
    read_image,
)

CONTENTS = (
    "<contents><partition_file><file_name>partition_nand.xml</file_name>"
    "<file_path>update/</file_path></partition_file></contents>"
)
PARTITIONS = (
    "<nandboot><partitions>"
    "<partition><name>0:MIBIB</name><img_name>partition.mbn</img_name></partition>"
    "<partition><name>0:boot</name><img_name>boot.img</img_name></partition>"
    "<partition><name>0:extra</name></partition>"
    "</partitions></nandboot>"
)


def make_firmware(root):
    fw = root / "fw"
    update = fw / "update"
    update.mkdir(parents=True)
    (fw / "contents.xml").write_text(CONTENTS)
    (update / "partition_nand.xml").write_text(PARTITIONS)
    (update / "partition.mbn").write_bytes(b"p" * 10)
    (update / "boot.img").write_bytes(b"b" * 30)
    (update / "NPRG9x07.mbn").write_bytes(b"n")
    (update / "ENPRG9x07.mbn").write_bytes(b"e")
    return fw


def digest(path):
    return hashlib.md5(path.read_bytes()).hexdigest().upper()


def test_parse_md5_line_extracts_name_and_value():
    entry = parse_md5_line("D:\\build\\boot.img:ABCD\n")
    assert entry == Md5Entry("boot.img", "ABCD")


@pytest.mark.parametrize(
    "line",
    ["START\n", "VERSION 1\n", "no separators here\n", "boot.img:ab\\cd\n", "name\\only\n"],
)
def test_parse_md5_line_rejects(line):
    assert parse_md5_line(line) is None


def test_parse_md5_file(tmp_path):
    path = tmp_path / "md5.txt"
    path.write_text("START\nx\\a.bin:11\nx\\b.bin:22\nEND\n")
    assert parse_md5_file(path) == [Md5Entry("a.bin", "11"), Md5Entry("b.bin", "22")]


def test_parse_md5_file_empty_and_missing(tmp_path):
    path = tmp_path / "md5.txt"
    path.write_text("START\nEND\n")
    with pytest.raises(FirmwareError):
        parse_md5_file(path)
    with pytest.raises(FirmwareError):
        parse_md5_file(tmp_path / "absent.txt")


def test_find_md5_file_case_insensitive(tmp_path):
    (tmp_path / "MD5.TXT").write_text("")
    assert find_md5_file(tmp_path) == f"{tmp_path}/MD5.TXT"
    assert find_md5_file(tmp_path / "nothing") is None


def test_md5_hex_of_empty_file(tmp_path):
    path = tmp_path / "empty"
    path.write_bytes(b"")
    assert md5_hex(path) == "D41D8CD98F00B204E9800998ECF8427E"


def test_check_file_md5(tmp_path):
    path = tmp_path / "boot.img"
    path.write_bytes(b"data")
    good = [Md5Entry("boot.img", digest(path))]
    assert check_file_md5(str(path), good)
    assert not check_file_md5(str(path), [Md5Entry("boot.img", "00")])
    assert not check_file_md5(str(path), [Md5Entry("other.img", digest(path))])
    assert not check_file_md5(str(tmp_path / "missing.img"), good)


def test_find_element_depth_first():
    root = ET.fromstring("<a><b><c id='1'/></b><c id='2'/></a>")
    assert find_element(root, "c").get("id") == "1"
    assert find_element(root, "a") is root
    assert find_element(root, "z") is None


def test_find_programmers(tmp_path):
    (tmp_path / "NPRG9x07.mbn").write_bytes(b"")
    (tmp_path / "ENPRG9x07.mbn").write_bytes(b"")
    assert find_programmers(str(tmp_path)) == ("NPRG9x07.mbn", "ENPRG9x07.mbn")
    with pytest.raises(FirmwareError):
        find_programmers(str(tmp_path / "missing"))


def test_find_firehose_files(tmp_path):
    names = ["patch_p.xml", "partition_complete_p.mbn", "rawprogram_nand.xml", "prog_nand_firehose.mbn"]
    for name in names:
        (tmp_path / name).write_bytes(b"")
    files = find_firehose_files(str(tmp_path))
    assert files == FirehoseFiles(*(f"{tmp_path}/{n}" for n in names))


def test_find_firehose_files_incomplete(tmp_path):
    (tmp_path / "patch_p.xml").write_bytes(b"")
    with pytest.raises(FirmwareError):
        find_firehose_files(str(tmp_path))


def test_read_image(tmp_path):
    fw = make_firmware(tmp_path)
    image = read_image(str(fw))
    assert [u.name for u in image.ufiles] == ["0:MIBIB", "0:boot"]
    assert [u.partition_name for u in image.ufiles] == ["MIBIB", "boot"]
    assert os.path.normpath(image.partition_path) == str(fw / "update" / "partition.mbn")
    assert os.path.normpath(image.nprg_path) == str(fw / "update" / "NPRG9x07.mbn")
    assert os.path.normpath(image.enprg_path) == str(fw / "update" / "ENPRG9x07.mbn")
    assert image.total_bytes == 40
    assert image.download_bytes == 30
    assert image.firehose_support is False
    assert image.md5_check_enabled is False


def test_read_image_with_firehose(tmp_path):
    fw = make_firmware(tmp_path)
    firehose = fw / "update" / "firehose"
    firehose.mkdir()
    for name in ["patch.xml", "partition_complete.mbn", "rawprogram.xml", "prog.mbn"]:
        (firehose / name).write_bytes(b"")
    image = read_image(str(fw))
    assert image.firehose_support is True
    assert image.firehose.patch_xml.endswith("firehose/patch.xml")


def test_read_image_missing_contents(tmp_path):
    with pytest.raises(FirmwareError):
        read_image(str(tmp_path))


def test_read_image_missing_programmer(tmp_path):
    fw = make_firmware(tmp_path)
    (fw / "update" / "ENPRG9x07.mbn").unlink()
    with pytest.raises(FirmwareError):
        read_image(str(fw))


def test_read_image_md5_pass_and_fail(tmp_path):
    fw = make_firmware(tmp_path)
    update = fw / "update"
    files = [fw / "contents.xml"] + [
        update / n for n in ["partition_nand.xml", "partition.mbn", "boot.img", "NPRG9x07.mbn", "ENPRG9x07.mbn"]
    ]
    lines = "".join(f"D:\\fw\\{p.name}:{digest(p)}\n" for p in files)
    (fw / "md5.txt").write_text("START\n" + lines + "END\n")
    assert read_image(str(fw)).md5_check_enabled is True

    (update / "boot.img").write_bytes(b"changed")
    with pytest.raises(FirmwareError):
        read_image(str(fw))


def test_upgrade_progress(tmp_path):
    path = tmp_path / "a.bin"
    path.write_bytes(b"x" * 25)
    progress = UpgradeProgress(100)
    assert progress.percent() == 0.0
    assert progress.add_file(str(path)) == 25
    assert progress.percent() == pytest.approx(0.25)
    assert progress.add_file(str(tmp_path / "missing")) == 25
    assert UpgradeProgress(0).percent() == 0.0