import json
import os
import sqlite3
from typing import Iterable


class ChainDB:
    def __init__(self, path: str):
        dir_name = os.path.dirname(path)
        if dir_name:
            os.makedirs(dir_name, exist_ok=True)
        # appends arrive from RPC worker threads; Chain serializes them
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self._init_tables()

    def _init_tables(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            "CREATE TABLE IF NOT EXISTS blocks ("
            "height INTEGER PRIMARY KEY,"
            "hash TEXT,"
            "data TEXT"
            ")"
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_blocks_hash ON blocks(hash)")
        self.conn.commit()

    def put_block(self, block_hash: str, height: int, data: dict) -> None:
        cur = self.conn.cursor()
        # plain INSERT: a sealed height is never overwritten
        cur.execute(
            "INSERT INTO blocks (height, hash, data) VALUES (?, ?, ?)",
            (height, block_hash, json.dumps(data)),
        )
        self.conn.commit()

    def iter_blocks(self) -> Iterable[dict]:
        cur = self.conn.cursor()
        cur.execute("SELECT data FROM blocks ORDER BY height ASC")
        rows = cur.fetchall()
        for row in rows:
            yield json.loads(row[0])

    def count_blocks(self) -> int:
        cur = self.conn.cursor()
        cur.execute("SELECT COUNT(*) FROM blocks")
        return int(cur.fetchone()[0])

    def close(self) -> None:
        self.conn.close()
