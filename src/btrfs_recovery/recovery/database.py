"""
btrfs-recovery - Reference index

SQLite catalog of every block observed on each device and the
parent/child edges found in valid node blocks. It is filled by an
external scanner; this module only creates the schema and queries it.

Device uuids and fsids are stored as 16 byte BLOBs.
"""

import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .. import constants

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS blocks (
    fsid BLOB NOT NULL,
    deviceUuid BLOB NOT NULL,
    offset INTEGER NOT NULL,
    owner INTEGER NOT NULL,
    level INTEGER NOT NULL,
    bytenr INTEGER NOT NULL,
    generation INTEGER NOT NULL,
    isValid INTEGER NOT NULL,
    csum BLOB
);
CREATE TABLE IF NOT EXISTS refs (
    deviceUuid BLOB NOT NULL,
    bytenr INTEGER NOT NULL,
    child INTEGER NOT NULL,
    childGeneration INTEGER NOT NULL,
    owner INTEGER NOT NULL,
    objectid INTEGER,
    type INTEGER,
    offset INTEGER
);
CREATE TABLE IF NOT EXISTS corruptBranches (
    deviceUuid BLOB NOT NULL,
    bytenr INTEGER NOT NULL,
    child INTEGER NOT NULL,
    objectid INTEGER,
    type INTEGER,
    offset INTEGER
);
CREATE TABLE IF NOT EXISTS keys (
    deviceUuid BLOB NOT NULL,
    bytenr INTEGER NOT NULL,
    objectid INTEGER NOT NULL,
    type INTEGER NOT NULL,
    offset INTEGER NOT NULL,
    data INTEGER
);
CREATE INDEX IF NOT EXISTS BlocksDevice ON blocks (deviceUuid, bytenr);
CREATE INDEX IF NOT EXISTS BlocksGeneration ON blocks (fsid, owner, bytenr, generation);
CREATE INDEX IF NOT EXISTS RefsChild ON refs (deviceUuid, child);
CREATE INDEX IF NOT EXISTS RefsParent ON refs (deviceUuid, bytenr);
CREATE INDEX IF NOT EXISTS KeysType ON keys (deviceUuid, type, objectid, offset);
"""


def placeholders(count: int) -> str:
    return ', '.join('?' * count)


def _device_list(device_uuids: Union[bytes, Iterable[bytes]]) -> List[bytes]:
    if isinstance(device_uuids, (bytes, bytearray)):
        return [bytes(device_uuids)]
    return [bytes(uuid) for uuid in device_uuids]


def _states_devices(filesystem_states: Dict) -> List[bytes]:
    uuids = []
    for state in filesystem_states.values():
        uuids.extend(state.device_uuids)
    return uuids


def _criteria(owner_column: str, owner: Optional[int], block_numbers: Sequence[int], params: List):
    """Extra filter for the mismatch queries, owner or explicit block numbers"""
    criteria = []
    if owner is not None:
        params.append(owner)
        criteria.append(f"{owner_column} = ?")
    if block_numbers:
        params.extend(block_numbers)
        criteria.append(f"blocks.bytenr IN ({placeholders(len(block_numbers))})")
    if not criteria:
        return ''
    return ' AND (' + ' OR '.join(criteria) + ')'


class Database:
    """
    Query surface of the reference index

    Args:
        path: SQLite database file, ':memory:' for an empty in-memory index
        trace: Log every executed statement at debug level
    """

    def __init__(self, path: Union[str, Path], trace: bool = False):
        self.path = str(path)
        self.conn = sqlite3.connect(self.path)
        self.conn.row_factory = sqlite3.Row
        if trace:
            self.conn.set_trace_callback(lambda statement: logger.debug(statement))
        self.conn.execute('PRAGMA temp_store = MEMORY')
        self.conn.execute(f'PRAGMA cache_size = {-0x80000}')
        self.conn.execute(f'PRAGMA mmap_size = {0x20000000}')

    def close(self):
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def create_schema(self):
        self.execute_script(SCHEMA)

    def execute_script(self, script: str):
        """Run a SQL dump, as produced by the index builder"""
        self.conn.executescript(script)
        self.conn.commit()

    def _query(self, query: str, params: Union[Sequence, Dict] = ()) -> List[Dict[str, Any]]:
        return [dict(row) for row in self.conn.execute(query, params)]

    def generation_mismatches(self, filesystem_states: Dict, owner: Optional[int] = None,
                              block_numbers: Sequence[int] = ()) -> List[Dict[str, Any]]:
        """Child blocks whose generation differs from what their parent expects"""
        device_uuids = _states_devices(filesystem_states)
        params: List = list(device_uuids)
        criteria = _criteria('refs.owner', owner, block_numbers, params)
        query = f"""
            SELECT blocks.fsid, blocks.deviceUuid, blocks.offset, blocks.owner, refs.owner AS expectedOwner,
                   blocks.level, blocks.bytenr, refs.bytenr AS parent,
                   blocks.generation, refs.childGeneration
            FROM blocks
            JOIN refs ON refs.deviceUuid = blocks.deviceUuid AND refs.child = blocks.bytenr
            WHERE blocks.deviceUuid IN ({placeholders(len(device_uuids))}) AND
                  blocks.generation <> refs.childGeneration
                  {criteria}
            ORDER BY blocks.level, refs.childGeneration DESC
        """
        return self._query(query, params)

    def invalid_blocks(self, filesystem_states: Dict, owner: Optional[int] = None,
                       block_numbers: Sequence[int] = ()) -> List[Dict[str, Any]]:
        """Referenced blocks the scanner found structurally invalid"""
        device_uuids = _states_devices(filesystem_states)
        params: List = list(device_uuids)
        criteria = _criteria('refs.owner', owner, block_numbers, params)
        query = f"""
            SELECT DISTINCT blocks.fsid, blocks.deviceUuid, blocks.offset, blocks.owner,
                   refs.owner AS expectedOwner, blocks.level, blocks.bytenr, blocks.generation
            FROM blocks
            JOIN refs ON refs.deviceUuid = blocks.deviceUuid AND refs.child = blocks.bytenr
            WHERE blocks.deviceUuid IN ({placeholders(len(device_uuids))}) AND isValid = 0
                  {criteria}
            ORDER BY blocks.bytenr, blocks.deviceUuid, blocks.offset
        """
        return self._query(query, params)

    def branch_mismatches(self, filesystem_states: Dict, owner: Optional[int] = None,
                          block_numbers: Sequence[int] = ()) -> List[Dict[str, Any]]:
        """Blocks whose first key differs from the key their parent points with"""
        device_uuids = _states_devices(filesystem_states)
        params: List = list(device_uuids)
        criteria = _criteria('blocks.owner', owner, block_numbers, params)
        query = f"""
            SELECT corruptBranches.deviceUuid, corruptBranches.bytenr, corruptBranches.child,
                   corruptBranches.objectid, corruptBranches.type, corruptBranches.offset,
                   blocks.fsid, blocks.offset AS blockOffset, blocks.owner, blocks.level, blocks.generation,
                   refs.bytenr AS parent, refs.owner AS expectedOwner, refs.childGeneration,
                   refs.objectid AS parentObjectid, refs.type AS parentType, refs.offset AS parentOffset
            FROM corruptBranches
            LEFT JOIN blocks ON blocks.deviceUuid = corruptBranches.deviceUuid AND blocks.bytenr = corruptBranches.bytenr
            LEFT JOIN refs ON refs.deviceUuid = corruptBranches.deviceUuid AND refs.child = corruptBranches.bytenr
            WHERE corruptBranches.deviceUuid IN ({placeholders(len(device_uuids))})
                  {criteria}
        """
        return self._query(query, params)

    def offsets(self, device_uuids: Union[bytes, Iterable[bytes]],
                block_numbers: Union[int, Sequence[int]]) -> List[Dict[str, Any]]:
        """Every recorded copy of the given blocks, newest generation first"""
        if isinstance(block_numbers, int):
            block_numbers = [block_numbers]
        block_numbers = list(block_numbers)
        devices = _device_list(device_uuids)
        if not block_numbers or not devices:
            return []
        query = f"""
            SELECT deviceUuid, offset, bytenr, generation
            FROM blocks
            WHERE deviceUuid IN ({placeholders(len(devices))}) AND
                  bytenr IN ({placeholders(len(block_numbers))})
            ORDER BY generation DESC, offset, deviceUuid
        """
        return self._query(query, devices + block_numbers)

    def parents(self, device_uuid: bytes, block_numbers: Union[int, Sequence[int]]) -> List[Dict[str, Any]]:
        if isinstance(block_numbers, int):
            block_numbers = [block_numbers]
        block_numbers = list(block_numbers)
        query = f"""
            SELECT deviceUuid, bytenr, child, childGeneration
            FROM refs
            WHERE deviceUuid = ? AND child IN ({placeholders(len(block_numbers))})
            ORDER BY childGeneration DESC, bytenr, deviceUuid
        """
        return self._query(query, [bytes(device_uuid)] + block_numbers)

    def newest_generations(self, fsid: bytes, owner: int, bytenr: Union[int, Sequence[int]],
                           min_generation: int = 0) -> List[Dict[str, Any]]:
        """Copies of a block newer than min_generation, newest first"""
        if isinstance(bytenr, int):
            bytenr = [bytenr]
        bytenr = list(bytenr)
        query = f"""
            SELECT deviceUuid, offset, bytenr, owner, level, generation, isValid
            FROM blocks
            WHERE fsid = ? AND owner = ? AND bytenr IN ({placeholders(len(bytenr))}) AND generation > ?
            ORDER BY generation DESC, deviceUuid, offset
        """
        return self._query(query, [bytes(fsid), owner] + bytenr + [min_generation])

    def unreferenced_blocks(self, fsid: bytes, owner: int) -> List[Dict[str, Any]]:
        """Blocks of a tree that no node points at and that point at nothing"""
        query = """
            SELECT blocks.deviceUuid, blocks.offset, blocks.owner, level, blocks.bytenr, generation
            FROM blocks
            LEFT JOIN refs childs ON blocks.deviceUuid = childs.deviceUuid AND childs.child = blocks.bytenr
            LEFT JOIN refs parents ON blocks.deviceUuid = parents.deviceUuid AND blocks.bytenr = parents.bytenr
            WHERE fsid = :fsid AND blocks.owner = :owner AND childs.bytenr IS NULL AND parents.bytenr IS NULL
            GROUP BY blocks.bytenr, generation, blocks.owner, level, csum
            ORDER BY generation DESC, blocks.bytenr
        """
        return self._query(query, {'fsid': bytes(fsid), 'owner': owner})

    def any_key_data(self, device_uuids: Iterable[bytes]) -> bool:
        devices = _device_list(device_uuids)
        if not devices:
            return False
        query = f"""
            SELECT keys.deviceUuid
            FROM keys
            WHERE keys.deviceUuid IN ({placeholders(len(devices))})
            LIMIT 1
        """
        return self.conn.execute(query, devices).fetchone() is not None

    def find_key_data(self, device_uuids: Iterable[bytes], **filters) -> List[Dict[str, Any]]:
        """
        Look up recorded keys.

        Args:
            device_uuids: Devices of the filesystem
            **filters: Column equality filters (type, objectid, offset, data)

        Returns:
            Rows with bytenr, objectid, type, offset, data and the owner of
            the block holding the key
        """
        devices = _device_list(device_uuids)
        if not devices:
            return []
        for name in filters:
            if name not in ('objectid', 'type', 'offset', 'data', 'bytenr'):
                raise ValueError(f"Unknown key column: {name}")
        fields = ''.join(f" AND keys.{name} = ?" for name in filters)
        query = f"""
            SELECT DISTINCT keys.bytenr, keys.objectid, keys.type, keys.offset, keys.data, blocks.owner
            FROM keys
            LEFT JOIN blocks ON blocks.deviceUuid = keys.deviceUuid AND blocks.bytenr = keys.bytenr
            WHERE keys.deviceUuid IN ({placeholders(len(devices))}){fields}
        """
        return self._query(query, devices + list(filters.values()))

    def is_tree_present(self, device_uuids: Iterable[bytes], tree: int) -> bool:
        devices = _device_list(device_uuids)
        if not devices:
            return False
        query = f"""
            SELECT 1
            FROM refs
            WHERE owner = ? AND deviceUuid IN ({placeholders(len(devices))})
            LIMIT 1
        """
        return self.conn.execute(query, [tree] + devices).fetchone() is not None


class ReferenceIndex:
    """
    A Database bound to the devices of one filesystem.

    Attached to a FilesystemState as its optional index. Key lookups only
    answer when the index recorded key data for these devices.
    """

    def __init__(self, database: Database, device_uuids: Iterable[bytes]):
        self.database = database
        self.device_uuids = _device_list(device_uuids)
        self.has_key_data = database.any_key_data(self.device_uuids)

    def is_tree_present(self, tree: int) -> bool:
        return self.database.is_tree_present(self.device_uuids, tree)

    def find_items(self, item_type: int, objectid: int, offset: int) -> List[Dict[str, Any]]:
        if not self.has_key_data:
            return []
        return self.database.find_key_data(self.device_uuids, type=item_type,
                                           objectid=objectid, offset=offset)

    def find_extent_backref(self, bytenr: int) -> List[Dict[str, Any]]:
        """EXTENT_DATA items whose disk bytenr is the given extent"""
        if not self.has_key_data:
            return []
        return self.database.find_key_data(self.device_uuids, type=constants.EXTENT_DATA, data=bytenr)
