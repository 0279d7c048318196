"""Local NCBI taxonomy store backed by SQLite.

The database mirrors the dump files of ``taxdmp.zip`` (divisions, genetic
codes, nodes and names). It answers the lookups the tree engine consumes:
nodes by id, root-first lineages, flat subtree node sets, and scientific
name -> taxid resolution.
"""

from __future__ import annotations

import logging
import sqlite3
from itertools import islice
from pathlib import Path
from typing import Iterable, List, Optional

from taxonomy_backend import dump_parsing
from taxonomy_backend.dump_download import extract_dump, remove_temp_files
from taxonomy_backend.classes_node_definition import (
    NCBI_ROOT_ID,
    SCIENTIFIC_NAME,
    SPECIES_RANK,
    UNSPECIFIED_CODE,
    DatabaseNotInitialized,
    MalformedRecord,
    NotFound,
    TaxonNode,
)

logger = logging.getLogger(__name__)

DB_FILENAME = "taxonomy.db"
BATCH_SIZE = 10000

CREATE_TABLES_STMT = """
DROP TABLE IF EXISTS divisions;
DROP TABLE IF EXISTS geneticCodes;
DROP TABLE IF EXISTS nodes;
DROP TABLE IF EXISTS names;

CREATE TABLE IF NOT EXISTS divisions (
    id INTEGER NOT NULL PRIMARY KEY,
    division TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS geneticCodes (
    id INTEGER NOT NULL PRIMARY KEY,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS nodes (
    tax_id INTEGER NOT NULL PRIMARY KEY,
    parent_tax_id INTEGER,
    rank TEXT NOT NULL,
    division_id INTEGER NOT NULL,
    genetic_code_id INTEGER NOT NULL,
    mito_genetic_code_id INTEGER NOT NULL,
    comment TEXT,

    FOREIGN KEY(division_id) REFERENCES divisions(id),
    FOREIGN KEY(genetic_code_id) REFERENCES geneticCodes(id),
    FOREIGN KEY(mito_genetic_code_id) REFERENCES geneticCodes(id)
);

CREATE TABLE IF NOT EXISTS names (
    id         INTEGER NOT NULL PRIMARY KEY,
    tax_id     INTEGER NOT NULL,
    name       TEXT NOT NULL,
    name_class TEXT NOT NULL
);
"""

NODE_QUERY = """
SELECT
  nodes.tax_id,
  nodes.parent_tax_id,
  nodes.rank,
  divisions.division,
  code.name AS code,
  mito.name AS mito,
  names.name_class,
  names.name,
  nodes.comment
FROM nodes
  INNER JOIN divisions ON nodes.division_id = divisions.id
  LEFT JOIN names ON nodes.tax_id = names.tax_id
  INNER JOIN geneticCodes code ON nodes.genetic_code_id = code.id
  INNER JOIN geneticCodes mito ON nodes.mito_genetic_code_id = mito.id
WHERE nodes.tax_id = ?
ORDER BY names.id
"""


def clean_term(term: str) -> str:
    """Trim a user supplied term and turn underscores into spaces."""
    return term.strip().replace("_", " ")


def _batched(rows: Iterable, size: int):
    rows = iter(rows)
    while True:
        batch = list(islice(rows, size))
        if not batch:
            return
        yield batch


class TaxonomyDB:
    """Read/write access to ``taxonomy.db``.

    The connection is opened lazily so that commands which do not touch the
    database (``--help``, argument errors) never create the file. An instance
    belongs to one thread; concurrent callers each open their own.
    """

    def __init__(self, path):
        self.path = Path(path)
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.path))
            logger.debug("Database %s opened.", self.path)
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _execute(self, sql: str, params=()):
        try:
            return self.conn.execute(sql, params)
        except sqlite3.OperationalError as e:
            if "no such table" in str(e):
                raise DatabaseNotInitialized(
                    f"The database {self.path} is probably not initialized. "
                    "Try running: 'taxtree populate'") from e
            raise

    '''---initialization and population---'''
    def init_db(self) -> None:
        self.conn.executescript(CREATE_TABLES_STMT)
        logger.debug("Tables created.")

    def _insert_rows(self, label: str, sql: str, rows: Iterable) -> int:
        count = 0
        for batch in _batched(rows, BATCH_SIZE):
            with self.conn:  # one transaction per batch
                self.conn.executemany(sql, batch)
            count += len(batch)
            logger.debug("Read %d %s records so far.", count, label)
        logger.debug("Done inserting %s.", label)
        return count

    def insert_divisions(self, dump_dir) -> int:
        logger.debug("Inserting divisions...")
        return self._insert_rows("divisions", "INSERT INTO divisions VALUES (?, ?)",
                                 dump_parsing.read_divisions(dump_dir))

    def insert_genetic_codes(self, dump_dir) -> int:
        logger.debug("Inserting genetic codes...")
        return self._insert_rows("genetic codes", "INSERT INTO geneticCodes VALUES (?, ?)",
                                 dump_parsing.read_genetic_codes(dump_dir))

    def insert_names(self, dump_dir) -> int:
        logger.debug("Inserting names...")
        count = self._insert_rows("names", "INSERT INTO names(tax_id, name, name_class) VALUES (?, ?, ?)",
                                  dump_parsing.read_names(dump_dir))
        logger.debug("Creating names indexes.")
        with self.conn:
            self.conn.execute("CREATE INDEX idx_names_tax_id ON names(tax_id)")
            self.conn.execute("CREATE INDEX idx_names_class ON names(name_class)")
            self.conn.execute("CREATE INDEX idx_names_name ON names(name COLLATE NOCASE)")
        return count

    def insert_nodes(self, dump_dir) -> int:
        logger.debug("Inserting nodes...")
        count = self._insert_rows("nodes", "INSERT INTO nodes VALUES (?, ?, ?, ?, ?, ?, ?)",
                                  dump_parsing.read_nodes(dump_dir))
        logger.debug("Creating nodes indexes.")
        with self.conn:
            self.conn.execute("CREATE INDEX idx_nodes_parent_id ON nodes(parent_tax_id)")
        return count

    def populate(self, dump_dir) -> None:
        """(Re)create the tables and load the extracted dump files in ``dump_dir``."""
        logger.info("Initialization of the database.")
        self.init_db()
        logger.info("Loading dumps into local database. This may take some time.")
        self.insert_divisions(dump_dir)
        self.insert_genetic_codes(dump_dir)
        self.insert_names(dump_dir)
        self.insert_nodes(dump_dir)
        logger.info("Database populated.")

    def populate_from_archive(self, archive) -> None:
        """Load a local copy of ``taxdmp.zip`` instead of downloading it."""
        archive = Path(archive)
        workdir = self.path.parent / "taxdmp"
        logger.info("Extracting dumps from %s...", archive)
        extract_dump(archive, workdir)
        try:
            self.populate(workdir)
        finally:
            remove_temp_files(workdir)
            if workdir.exists() and not any(workdir.iterdir()):
                workdir.rmdir()

    '''---lookups---'''
    def get_node(self, tax_id: int) -> TaxonNode:
        node = None
        for row in self._execute(NODE_QUERY, (tax_id,)):
            if node is None:
                tid, parent, rank, division, code, mito, _, _, comment = row
                node = TaxonNode(
                    tid, parent, rank, {},
                    division=division,
                    genetic_code=code,
                    mito_genetic_code=None if mito == UNSPECIFIED_CODE else mito,
                    comments=comment or None)
            if row[6] is not None: # NULL when the node has no names at all
                node.add_name(row[6], row[7])

        if node is None:
            raise NotFound(f"No such ID: {tax_id}")
        if not node.names.get(SCIENTIFIC_NAME):
            raise MalformedRecord(f"Taxonomy ID {tax_id} has no scientific name")
        return node

    def get_nodes(self, tax_ids: Iterable[int]) -> List[TaxonNode]:
        """Nodes in the same order as ``tax_ids``; an unknown id raises ``NotFound``."""
        return [self.get_node(tax_id) for tax_id in tax_ids]

    def get_parent_id(self, tax_id: int) -> int:
        row = self._execute("SELECT parent_tax_id FROM nodes WHERE tax_id = ?", (tax_id,)).fetchone()
        if row is None:
            raise NotFound(f"No such ID: {tax_id}")
        return row[0]

    def get_lineage(self, tax_id: int, root_id: int = NCBI_ROOT_ID) -> List[TaxonNode]:
        """All nodes from ``root_id`` down to ``tax_id``, root first."""
        ids = [tax_id]
        seen = {tax_id}
        current = tax_id
        while current != root_id:
            parent = self.get_parent_id(current)
            if parent in seen:
                raise MalformedRecord(f"Lineage of {tax_id} never reaches the root {root_id} (loop at {parent})")
            ids.append(parent)
            seen.add(parent)
            current = parent

        lineage = self.get_nodes(ids)
        lineage.reverse()
        return lineage

    def get_children(self, tax_id: int) -> List[int]:
        rows = self._execute(
            "SELECT tax_id FROM nodes WHERE parent_tax_id = ? AND tax_id != parent_tax_id ORDER BY tax_id",
            (tax_id,))
        return [row[0] for row in rows]

    def get_subtree_nodes(self, root_id: int, species_only: bool = False) -> List[TaxonNode]:
        """Flat node set of ``root_id`` and its descendants.

        With ``species_only`` each branch stops at its first species-ranked
        descendant (subspecies, strains... are left out).
        """
        root = self.get_node(root_id)
        nodes = [root]
        stack = self.get_children(root_id)
        while stack:
            tax_id = stack.pop()
            node = self.get_node(tax_id)
            nodes.append(node)
            if species_only and node.rank == SPECIES_RANK:
                continue
            stack.extend(self.get_children(tax_id))
        logger.debug("Subtree of %s holds %d node(s)", root_id, len(nodes))
        return nodes

    def get_taxid(self, name: str) -> int:
        rows = self._execute(
            "SELECT DISTINCT tax_id FROM names WHERE name = ? COLLATE NOCASE AND name_class = ? ORDER BY tax_id",
            (name, SCIENTIFIC_NAME)).fetchall()
        if not rows:
            raise NotFound(f"No such name: {name}")
        if len(rows) > 1:
            logger.warning("Name '%s' is ambiguous (taxids %s), using %s",
                           name, ", ".join(str(r[0]) for r in rows), rows[0][0])
        return rows[0][0]

    def get_taxids(self, names: Iterable[str]) -> List[int]:
        return [self.get_taxid(name) for name in names]

    def terms_to_taxids(self, terms: Iterable[str]) -> List[int]:
        """Resolve terms (taxids or scientific names) to taxids, keeping the input order."""
        ids = []
        for term in terms:
            term = clean_term(str(term))
            try:
                ids.append(int(term))
            except ValueError: # anything that does not parse as an integer is a name
                ids.append(self.get_taxid(term))
        return ids


def lineage_provider(db: TaxonomyDB, root_id: int = NCBI_ROOT_ID):
    """Return the ``fetch_lineage(tax_id)`` callable the tree engine expects."""
    def fetch_lineage(tax_id: int) -> List[TaxonNode]:
        return db.get_lineage(tax_id, root_id)
    return fetch_lineage

