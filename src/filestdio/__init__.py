"""File-backed pseudo-stdio: an ordered byte stream between two processes over two files.

Layout of one link (server view):
    <prefix>.in     client appends, server tails
    <prefix>.out    server appends, client tails

Each reader keeps a private byte offset and only ever reads forward; each
writer only ever appends. There are no locks and no metadata files: the
filesystem is the only thing the two sides share.
"""

from filestdio.config import ConfigError, FileStdioConfig, init_config, load_config
from filestdio.duplex import (
    DuplexEndpoint,
    StdioPaths,
    default_prefix,
    open_client_endpoint,
    open_server_endpoint,
    resolve_paths,
)
from filestdio.streams import (
    AppendingFileWriter,
    ChannelBrokenError,
    ChannelClosedError,
    FileStdioError,
    TailingFileReader,
    open_tail_reader,
)

__all__ = [
    "AppendingFileWriter",
    "ChannelBrokenError",
    "ChannelClosedError",
    "ConfigError",
    "DuplexEndpoint",
    "FileStdioConfig",
    "FileStdioError",
    "StdioPaths",
    "TailingFileReader",
    "default_prefix",
    "init_config",
    "load_config",
    "open_client_endpoint",
    "open_server_endpoint",
    "open_tail_reader",
    "resolve_paths",
]
