"""
replbridge.codec - Wire codecs for the two REPL protocols

Modules:
- bencode.py: Bencode encoding and resumable decoding
- edn.py: EDN reader/printer used for prepl replies and exception maps
- nrepl.py: nREPL request/response codec
- prepl.py: prepl request/response codec

Both codecs share one interface:
    encode(request, session=None) -> bytes
    decode(data) -> list[ResponseFragment]
"""

from replbridge.codec.nrepl import NreplCodec
from replbridge.codec.prepl import PreplCodec

__all__ = ["NreplCodec", "PreplCodec"]
