import struct

from ..exceptions import ItemDecodeError


class ByteReader:
    """Sequential little-endian reader over an item payload"""

    def __init__(self, data: bytes):
        self.data = bytes(data)
        self.position = 0

    def unpack(self, fmt: str) -> tuple:
        size = struct.calcsize(fmt)
        if self.position + size > len(self.data):
            raise ItemDecodeError(f"Need {size} bytes at {self.position}, have {len(self.data) - self.position}")
        values = struct.unpack_from(fmt, self.data, self.position)
        self.position += size
        return values

    def read(self, length: int) -> bytes:
        chunk = self.data[self.position:self.position + length]
        self.position += len(chunk)
        return chunk

    def read_rest(self) -> bytes:
        return self.read(len(self.data) - self.position)

    def read_byte(self) -> int:
        return self.unpack('<B')[0]

    def seek(self, position: int):
        self.position = position

    def tell(self) -> int:
        return self.position

    def eof(self) -> bool:
        return self.position >= len(self.data)
