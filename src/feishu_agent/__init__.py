"""Feishu Agent - command-line access to the Feishu open platform."""

__version__ = "0.1.0"
