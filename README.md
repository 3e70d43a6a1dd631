# qflash

Helpers for upgrading the firmware of cellular modules on Linux. The package has three parts:

- **AT response parsing.** `qflash.at_tok` tokenizes AT response lines such as `+CSQ: 23,99`.
- **A fastboot client.** `qflash.fastboot.protocol` speaks the fastboot wire protocol over any transport. `qflash.fastboot.engine` queues fastboot actions and runs them in order. `qflash.fastboot.usb` finds fastboot interfaces through sysfs and opens them through usbfs. `qflash.fastboot.cli` is the command-line front end.
- **Firmware packages.** `qflash.firmware` reads a firmware directory. It handles `contents.xml`, the partition table it points to, the `NPRG*` and `ENPRG*` programmer images, an optional `md5.txt` checksum list and an optional `firehose/` directory.

The package uses only the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Command line

The `qflash-fastboot` command talks to a device in fastboot mode:

```
qflash-fastboot devices
qflash-fastboot getvar version-bootloader
qflash-fastboot flash boot boot.img
qflash-fastboot erase cache
qflash-fastboot -w reboot
qflash-fastboot continue
qflash-fastboot oem some-command
qflash-fastboot help
```

### Commands

- `devices` prints one line for each fastboot interface it finds. The line is the serial number followed by a tab and `fastboot`. The serial number is replaced by `no permissions` when the device is read-only, and by `????????????` when it has no serial number.
- `getvar <name>` prints the value of a bootloader variable.
- `erase <partition>` erases a partition.
- `flash <partition> [<file>]` sends an image and writes it to a partition. If you leave out the file, these partition names map to image files: `boot`, `recovery`, `system`, `userdata` and `info`. With `-p <product>`, the image is looked for under `../../../target/product/<product>/`, relative to the running executable's directory. Without it, the image is looked for in `ANDROID_PRODUCT_OUT`.
- `signature <file>` sends a 256-byte signature and installs it.
- `reboot` reboots the device. `reboot-bootloader` reboots the device into the bootloader.
- `continue` resumes the boot.
- `oem <words...>` sends the remaining words as a single command.
- `help` prints the usage text.

The usage text also lists `update`, `flashall`, `boot` and `flash:raw`. The command does not carry out any of these and rejects them with the usage text.

### Options

- `-w` erases `userdata` and `cache` after the other actions.
- `-s <serial>` selects a device by serial number or by its `usb:<sysfs name>` path. If this option is not given, `ANDROID_SERIAL` is used.
- `-p <product>` sets the product name used to locate images.
- `-i <vendor id>` accepts one more USB vendor id. The value must fit in 16 bits.
- `-n <page size>` must be a non-zero number.
- `-b <base_addr>` and `-c <cmdline>` are accepted but have no effect.

The command exits with status 0 on success and 1 on any failure.

## Library use

Parse an AT response line:

```python
from qflash.at_tok import start_tokenizing

tok = start_tokenizing("+CSQ: 23,99")
rssi = tok.next_int()   # 23
ber = tok.next_int()    # 99
```

`AtTokenizer` also provides `next_hex_int`, `next_bool`, `next_str`, `has_more` and `skip_comma`. The module-level helpers `char_count` and `get_element_value` work on whole strings.

Run fastboot actions over your own transport. To do this, subclass `Transport` and provide `read`, `write` and `close`:

```python
from qflash.fastboot.protocol import FastbootProtocol
from qflash.fastboot.engine import ActionQueue

protocol = FastbootProtocol(transport)
queue = ActionQueue()
queue.queue_erase("cache")
saved = queue.queue_query_save("product")
queue.queue_reboot()
queue.execute(protocol)
print(saved.result)
```

`qflash.fastboot.usb.usb_open(callback)` returns a `UsbHandle` that can serve as the transport. It returns the first interface the callback accepts. `qflash.fastboot.cli.match_fastboot` is a suitable callback.

Read a firmware package:

```python
from qflash.firmware import read_image, UpgradeProgress

image = read_image("/path/to/firmware")
for ufile in image.ufiles:
    print(ufile.name, ufile.img_name)
progress = UpgradeProgress(image.download_bytes)
```

If `md5.txt` is present and holds entries, every file that is read must match its recorded checksum.

### Errors

Failures raise exceptions:

- `AtTokenError` from `qflash.at_tok`
- `FastbootError` from `qflash.fastboot.protocol` and `ActionQueue.execute`
- `FastbootUsageError` from `qflash.fastboot.cli`
- `FirmwareError` from `qflash.firmware`

## What the package does not do

- **No AT command channel.** The package does not open a module's AT port, send AT commands or wait for their replies. It only parses response lines that you have already read.
- **No full upgrade driver.** The package does not switch a module into download mode, detect the module's state or drive a whole upgrade from start to finish. It does not perform the streaming or firehose download protocols. `read_image` locates and checks the firehose files but does not send them.
- **Fastboot only.** Partitions are flashed only through the fastboot client described above.