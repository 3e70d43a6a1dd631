"""Firmware upgrade helpers for cellular modules: AT response tokenizer, fastboot client and firmware package reader."""

__version__ = "0.1.0"