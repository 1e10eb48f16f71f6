"""
btrfs-recovery - Extent tree items

File extents, extent items with their inline back references, data
references and block groups.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .. import constants
from ..exceptions import ItemDecodeError
from .fs_tree import MAX_ALLOWED_REFS, MAX_GENERATION_LEEWAY
from .reader import ByteReader

MAX_EXTENT_REF_COUNT = 1000

MAX_FILE_SIZE = 30_000_000_000_000  # 30 TB

MAX_BLOCK_GROUP_SIZE = 10 ** 15
MIN_SUBVOLUME_ID = 256

EXTENT_INLINE = 0
EXTENT_REG = 1
EXTENT_PREALLOC = 2
EXTENT_MAX_TYPES = 3

COMPRESSION_NONE = 0
COMPRESSION_ZLIB = 1
COMPRESSION_LZO = 2
COMPRESSION_ZSTD = 3
COMPRESSION_MAX = 4

ENCRYPTION_NONE = 0
ENCRYPTION_MAX = 1

ENCODING_NONE = 0
ENCODING_MAX = 1

BLOCK_GROUP_DATA = 1 << 0
BLOCK_GROUP_SYSTEM = 1 << 1
BLOCK_GROUP_METADATA = 1 << 2

BLOCK_GROUP_RAID0 = 1 << 3
BLOCK_GROUP_RAID1 = 1 << 4
BLOCK_GROUP_DUP = 1 << 5
BLOCK_GROUP_RAID10 = 1 << 6
BLOCK_GROUP_RAID5 = 1 << 7
BLOCK_GROUP_RAID6 = 1 << 8
BLOCK_GROUP_RAID1C3 = 1 << 9
BLOCK_GROUP_RAID1C4 = 1 << 10

BLOCK_GROUP_MASK = 0x1FF
BLOCK_GROUP_MAX = (1 << 49) | (1 << 48) | (1 << 47)

EXTENT_ITEM_FORMAT = '<QQQ'
EXTENT_DATA_REF_FORMAT = '<QQQI'
SHARED_DATA_REF_FORMAT = '<QI'
BLOCK_GROUP_FORMAT = '<QQQ'


@dataclass
class FileExtentData:
    generation: int
    size: int
    compression: int
    encryption: int
    encoding: int
    type: int
    data: Optional[bytes] = None
    disk_bytenr: Optional[int] = None
    disk_bytes: Optional[int] = None
    offset: Optional[int] = None
    bytes: Optional[int] = None


@dataclass
class ExtentDataRef:
    root: int
    objectid: int
    offset: int
    count: int


@dataclass
class SharedDataRef:
    parent: int
    count: int


@dataclass
class ExtentInlineRef:
    type: int
    data_ref: Optional[ExtentDataRef] = None
    shared_ref: Optional[SharedDataRef] = None
    offset: Optional[int] = None


@dataclass
class ExtentItemData:
    refs: int
    generation: int
    flags: int
    inline: List[ExtentInlineRef] = field(default_factory=list)
    extra: Optional[bytes] = None


@dataclass
class SharedDataRefItem:
    count: int


@dataclass
class BlockGroupData:
    used: int
    chunk_objectid: int
    flags: int


def parse_extent_data(item, data: bytes):
    reader = ByteReader(data)
    values = reader.unpack('<QQBBHB')
    extent = FileExtentData(*values)

    if extent.type == EXTENT_INLINE:
        extent.data = reader.read(extent.size)
    else:
        extent.disk_bytenr, extent.disk_bytes, extent.offset, extent.bytes = reader.unpack('<QQQQ')

    item.data = extent
    item.size_read = reader.tell()


def read_extent_data_ref(reader: ByteReader) -> ExtentDataRef:
    return ExtentDataRef(*reader.unpack(EXTENT_DATA_REF_FORMAT))


def read_shared_data_ref(reader: ByteReader) -> SharedDataRef:
    return SharedDataRef(*reader.unpack(SHARED_DATA_REF_FORMAT))


def parse_extent_item(item, data: bytes):
    """Used for both EXTENT_ITEM and METADATA_ITEM"""
    reader = ByteReader(data)
    item.data = ExtentItemData(*reader.unpack(EXTENT_ITEM_FORMAT))
    parse_extent_inline_refs(item.data, reader)
    item.size_read = reader.tell()


def parse_extent_inline_refs(extent: ExtentItemData, reader: ByteReader):
    """
    Decode inline back references until the payload ends.

    Unknown ref types and truncated refs stop decoding; everything from
    that point on is kept in extent.extra.
    """
    while not reader.eof():
        start = reader.tell()
        inline = ExtentInlineRef(reader.read_byte())
        try:
            if inline.type == constants.EXTENT_DATA_REF:
                inline.data_ref = read_extent_data_ref(reader)
            elif inline.type == constants.SHARED_DATA_REF:
                inline.shared_ref = read_shared_data_ref(reader)
            elif inline.type in (constants.TREE_BLOCK_REF, constants.SHARED_BLOCK_REF):
                inline.offset = reader.unpack('<Q')[0]
            else:
                raise ItemDecodeError(f"Unknown inline ref type {inline.type}")
        except ItemDecodeError:
            reader.seek(start)
            extent.extra = reader.read_rest()
            # extra is not counted as read
            reader.seek(start)
            return

        extent.inline.append(inline)


def parse_extent_data_ref(item, data: bytes):
    reader = ByteReader(data)
    item.data = read_extent_data_ref(reader)
    item.size_read = reader.tell()


def parse_shared_data_ref(item, data: bytes):
    reader = ByteReader(data)
    item.data = SharedDataRefItem(reader.unpack('<I')[0])
    item.size_read = reader.tell()


def parse_block_group_item(item, data: bytes):
    reader = ByteReader(data)
    item.data = BlockGroupData(*reader.unpack(BLOCK_GROUP_FORMAT))
    item.size_read = reader.tell()


def is_valid_extent_id(item, header) -> bool:
    return item.key.objectid > 0 and item.key.objectid % header.block.sectorsize == 0


def validate_extent_data(item, header, filesystem_state=None, throughout=True):
    item.corruption.head = not item.key.is_valid_objectid(True)

    item.corruption.data = item.data is None
    if item.corruption.data:
        return item.corruption.is_valid()

    data = item.data
    is_valid = (data.generation <= header.generation + MAX_GENERATION_LEEWAY and
                data.generation > 0 and
                data.size < MAX_FILE_SIZE and
                data.type < EXTENT_MAX_TYPES and
                data.compression < COMPRESSION_MAX and
                data.encryption < ENCRYPTION_MAX and
                data.encoding < ENCODING_MAX)

    if is_valid and data.type != EXTENT_INLINE:
        is_valid = (data.disk_bytenr % header.block.sectorsize == 0 and
                    data.disk_bytes < MAX_FILE_SIZE and
                    data.bytes < MAX_FILE_SIZE)

        if (is_valid and data.compression == COMPRESSION_NONE and
                data.encryption == ENCRYPTION_NONE and
                data.encoding == ENCODING_NONE):
            is_valid = data.size == data.disk_bytes and data.bytes <= data.disk_bytes

    item.corruption.data = not is_valid
    return item.corruption.is_valid()


def validate_extent_item(item, header, filesystem_state=None, throughout=True):
    item.corruption.head = not is_valid_extent_id(item, header)

    item.corruption.data = item.data is None
    if item.corruption.data:
        return item.corruption.is_valid()

    data = item.data
    is_valid = (data.refs <= MAX_ALLOWED_REFS and
                data.generation <= header.generation + MAX_GENERATION_LEEWAY and
                data.generation > 0)

    for inline in data.inline:
        if not is_valid_extent_inline(inline, header):
            is_valid = False

    is_valid = (is_valid and data.extra is None and
                data.refs != 0 and data.refs >= len(data.inline))
    if is_valid and filesystem_state is not None and throughout:
        is_valid = are_extent_backrefs_valid(item, filesystem_state)

    item.corruption.data = not is_valid
    return item.corruption.is_valid()


def validate_extent_data_ref(item, header, filesystem_state=None, throughout=True):
    item.corruption.head = not item.key.is_valid_objectid(True)
    item.corruption.data = item.data is None or not is_valid_data_ref(item.data)
    return item.corruption.is_valid()


def validate_shared_data_ref(item, header, filesystem_state=None, throughout=True):
    item.corruption.head = not item.key.is_valid_objectid(True)
    item.corruption.data = item.data is None or item.data.count > MAX_EXTENT_REF_COUNT
    return item.corruption.is_valid()


def validate_block_group_item(item, header, filesystem_state=None, throughout=True):
    item.corruption.head = not item.key.is_valid_objectid(True)

    item.corruption.data = item.data is None
    if item.corruption.data:
        return item.corruption.is_valid()

    flags = item.data.flags
    profile = (flags & BLOCK_GROUP_MASK) >> 3
    is_valid = (item.data.used <= MAX_BLOCK_GROUP_SIZE and
                flags < BLOCK_GROUP_MAX and
                flags & (BLOCK_GROUP_DATA | BLOCK_GROUP_SYSTEM | BLOCK_GROUP_METADATA) > 0 and
                bin(profile).count('1') == 1)

    item.corruption.data = not is_valid
    return item.corruption.is_valid()


def is_valid_data_ref(data: ExtentDataRef) -> bool:
    return (data.root in (constants.ROOT_TREE_OBJECTID, constants.FS_TREE_OBJECTID) or
            data.root >= MIN_SUBVOLUME_ID) and data.count <= MAX_EXTENT_REF_COUNT


def is_valid_shared_data_ref(inline: ExtentInlineRef, header) -> bool:
    ref = inline.shared_ref
    return (ref.parent > 0 and ref.parent % header.block.sectorsize == 0 and
            ref.count <= MAX_EXTENT_REF_COUNT)


def is_valid_tree_block_ref(inline: ExtentInlineRef, header) -> bool:
    return (inline.type == constants.TREE_BLOCK_REF and
            (constants.ROOT_TREE_OBJECTID <= inline.offset <= constants.FREE_SPACE_TREE_OBJECTID or
             inline.offset >= MIN_SUBVOLUME_ID))


def is_valid_shared_block_ref(inline: ExtentInlineRef, header) -> bool:
    return (inline.type == constants.SHARED_BLOCK_REF and
            inline.offset > 0 and inline.offset % header.block.sectorsize == 0)


def is_valid_extent_inline(inline: ExtentInlineRef, header) -> bool:
    if inline.type == constants.EXTENT_DATA_REF:
        return is_valid_data_ref(inline.data_ref)
    elif inline.type == constants.SHARED_DATA_REF:
        return is_valid_shared_data_ref(inline, header)
    elif inline.type == constants.TREE_BLOCK_REF:
        return is_valid_tree_block_ref(inline, header)
    elif inline.type == constants.SHARED_BLOCK_REF:
        return is_valid_shared_block_ref(inline, header)
    return False


def are_extent_backrefs_valid(item, filesystem_state) -> bool:
    """
    Cross-check inline back references against the filesystem.

    Shared data refs must point at a readable block with a sane header.
    Data refs must match the owner of one of those blocks, or an
    EXTENT_DATA item in the reference index when one is attached.
    Tree block refs need the tree to exist, shared block refs need a
    node that points at this extent.

    Args:
        item: EXTENT_ITEM or METADATA_ITEM leaf item
        filesystem_state: FilesystemState used to read other blocks

    Returns:
        True if every back reference checks out
    """
    inline_refs = item.data.inline
    if not inline_refs:
        return True

    blocks = []
    for inline in inline_refs:
        if inline.type != constants.SHARED_DATA_REF:
            continue
        parent = filesystem_state.find_valid_header_block(inline.shared_ref.parent)
        if parent is None:
            return False
        blocks.append(parent)

    index = filesystem_state.index
    for inline in inline_refs:
        if inline.type == constants.EXTENT_DATA_REF:
            if any(block.header.owner == inline.data_ref.root for block in blocks):
                continue
            if index is not None and index.has_key_data:
                extent_datas = index.find_items(constants.EXTENT_DATA,
                                                inline.data_ref.objectid,
                                                inline.data_ref.offset)
                if not any(extent_data['owner'] == inline.data_ref.root and
                           extent_data['data'] == item.key.objectid
                           for extent_data in extent_datas):
                    return False
            elif blocks:
                return False
        elif inline.type == constants.TREE_BLOCK_REF:
            if index is not None and not index.is_tree_present(inline.offset):
                return False
        elif inline.type == constants.SHARED_BLOCK_REF:
            found = False
            for block in filesystem_state.each_block(inline.offset):
                if block.is_node() and any(node_item.block_number == item.key.objectid
                                           for node_item in block.items):
                    found = True
                    break
            if not found:
                return False
        elif inline.type != constants.SHARED_DATA_REF:
            return False

    return True
