"""Threadwire - supervised pty sessions streamed into chat threads"""

__version__ = "0.1.0"
