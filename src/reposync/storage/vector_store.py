"""Vector storage using LanceDB for semantic search over code chunks."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import lancedb
import pyarrow as pa

from reposync.storage.sqlite_store import CodeChunk


@dataclass
class SearchResult:
    file_path: str
    name: str
    chunk_type: str
    docstring: str
    code: str
    score: float


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class VectorStore:
    """LanceDB vector store for one repo's chunk embeddings, across branches."""

    def __init__(self, db_path: Path, dims: int = 768, table_name: str = "chunks") -> None:
        self._db_path = db_path
        self._dims = dims
        self._table_name = table_name
        db_path.mkdir(parents=True, exist_ok=True)
        self._db = lancedb.connect(str(db_path))
        self._table: lancedb.table.Table | None = None

    def _schema(self) -> pa.Schema:
        return pa.schema(
            [
                pa.field("vector", pa.list_(pa.float32(), self._dims)),
                pa.field("branch", pa.utf8()),
                pa.field("file_path", pa.utf8()),
                pa.field("chunk_index", pa.int32()),
                pa.field("name", pa.utf8()),
                pa.field("chunk_type", pa.utf8()),
                pa.field("docstring", pa.utf8()),
                pa.field("code", pa.utf8()),
            ]
        )

    def init_table(self) -> None:
        """Create the chunks table if it doesn't exist, or open it."""
        existing = self._db.list_tables().tables
        if self._table_name in existing:
            self._table = self._db.open_table(self._table_name)
        else:
            self._table = self._db.create_table(self._table_name, schema=self._schema())

    def exists(self) -> bool:
        return self._table_name in self._db.list_tables().tables

    def _get_table(self) -> lancedb.table.Table:
        if self._table is None:
            self.init_table()
        return self._table  # type: ignore[return-value]

    def replace_file(
        self,
        branch: str,
        file_path: str,
        chunks: list[CodeChunk],
        vectors: list[list[float]],
    ) -> None:
        """Replace every vector of one file with the given chunks."""
        self.delete_file(branch, file_path)
        if not chunks:
            return
        rows = [
            {
                "vector": vec,
                "branch": branch,
                "file_path": file_path,
                "chunk_index": c.chunk_index,
                "name": c.name,
                "chunk_type": c.chunk_type,
                "docstring": c.docstring,
                "code": c.code,
            }
            for c, vec in zip(chunks, vectors)
        ]
        self._get_table().add(rows)

    def delete_file(self, branch: str, file_path: str) -> None:
        self._get_table().delete(
            f"branch = {_quote(branch)} AND file_path = {_quote(file_path)}"
        )

    def search(
        self, query_vector: list[float], branch: str, limit: int = 10
    ) -> list[SearchResult]:
        """Search a branch for similar chunks by cosine distance.

        Returns results sorted by relevance (lowest distance = most similar).
        """
        results = (
            self._get_table()
            .search(query_vector)
            .distance_type("cosine")
            .where(f"branch = {_quote(branch)}", prefilter=True)
            .limit(limit)
            .to_list()
        )
        return [
            SearchResult(
                file_path=r["file_path"],
                name=r["name"],
                chunk_type=r["chunk_type"],
                docstring=r["docstring"],
                code=r["code"],
                score=float(r["_distance"]),
            )
            for r in results
        ]

    def count(self) -> int:
        """Return the number of rows in the table."""
        return self._get_table().count_rows()
