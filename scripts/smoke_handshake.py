import asyncio
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), ".."))
from connectpipe.handshake import build_request, parse_response, read_response


class _OneByteAtATime:
    def __init__(self, data: bytes) -> None:
        self.data = data

    async def read(self, n: int) -> bytes:
        chunk, self.data = self.data[:1], self.data[1:]
        return chunk


req = build_request("example.org", 22, b"user:pass")
assert req.startswith(b"CONNECT example.org:22 HTTP/1.0\r\n"), req
assert req.endswith(b"\r\n\r\n"), req

head = b"HTTP/1.1 200 Connection established\r\n" + b"".join(b"X-%d: v\r\n" % i for i in range(40)) + b"\r\n"
parsed = parse_response(head + b"payload", max_headers=64)
assert parsed is not None and parsed.offset == len(head), "unexpected parse result"

outcome = asyncio.run(read_response(_OneByteAtATime(head + b"payload")))
assert outcome.success and outcome.leftover == b"", outcome
print("connect handshake smoke test passed")
