"""Readers for the ``*.dmp`` files shipped in NCBI's ``taxdmp.zip``.

Every dump line looks like ``field\\t|\\tfield\\t|\\t...\\t|``: the fields are
split on ``|`` and stripped. Quoting is disabled because names legitimately
contain double quotes.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterator, Tuple

DIVISIONS_DMP = "division.dmp"
GENETIC_CODES_DMP = "gencode.dmp"
NAMES_DMP = "names.dmp"
NODES_DMP = "nodes.dmp"


def _read_dump(path) -> Iterator[list]:
    with open(path, "r", encoding="utf-8", newline="") as handle:
        reader = csv.reader(handle, delimiter="|", quoting=csv.QUOTE_NONE)
        for record in reader:
            if not record or not "".join(record).strip():
                continue  # skip empty lines
            yield [field.strip() for field in record]


def read_divisions(dump_dir) -> Iterator[Tuple[int, str]]:
    """Yield ``(division_id, division_name)`` from division.dmp."""
    for record in _read_dump(Path(dump_dir) / DIVISIONS_DMP):
        yield int(record[0]), record[2]


def read_genetic_codes(dump_dir) -> Iterator[Tuple[int, str]]:
    """Yield ``(genetic_code_id, name)`` from gencode.dmp."""
    for record in _read_dump(Path(dump_dir) / GENETIC_CODES_DMP):
        yield int(record[0]), record[2]


def read_names(dump_dir) -> Iterator[Tuple[int, str, str]]:
    """Yield ``(tax_id, name, name_class)`` from names.dmp."""
    for record in _read_dump(Path(dump_dir) / NAMES_DMP):
        yield int(record[0]), record[1], record[3]


def read_nodes(dump_dir) -> Iterator[Tuple[int, int, str, int, int, int, str]]:
    """Yield ``(tax_id, parent_tax_id, rank, division_id, genetic_code_id,
    mito_genetic_code_id, comment)`` from nodes.dmp."""
    for record in _read_dump(Path(dump_dir) / NODES_DMP):
        comment = record[12] if len(record) > 12 else ""
        yield (int(record[0]), int(record[1]), record[2], int(record[4]),
               int(record[6]), int(record[8]), comment)
