"""Fastboot protocol, action queue, USB discovery and command-line client."""