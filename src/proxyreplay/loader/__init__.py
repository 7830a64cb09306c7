"""
ProxyReplay Loader Module

Turns a directory of replay files into the run's session registry.
"""

from .handler import ReplayFileHandler, ClientReplayFileHandler
from .files import load_replay_file, load_replay_directory, find_replay_files

__all__ = [
    'ReplayFileHandler',
    'ClientReplayFileHandler',
    'load_replay_file',
    'load_replay_directory',
    'find_replay_files',
]
