import zipfile
from pathlib import Path

import django
import pytest
from django.conf import settings

from taxonomy_backend.classes_node_definition import TaxonNode
from taxonomy_backend.taxon_lookup import DB_FILENAME, TaxonomyDB


def pytest_configure(config):
    if settings.configured:
        return
    settings.configure(
        DEBUG=False,
        SECRET_KEY="tests-only",
        ALLOWED_HOSTS=["testserver"],
        ROOT_URLCONF="taxonomy_app.urls",
        INSTALLED_APPS=["taxonomy_app"],
        TEMPLATES=[{
            "BACKEND": "django.template.backends.django.DjangoTemplates",
            "APP_DIRS": True,
        }],
        MEDIA_URL="/media/",
        MEDIA_ROOT="/nonexistent/media",
        BASE_DIR_BACKEND=Path(__file__).resolve().parent.parent,
        TAXONOMY_DB_PATH="/nonexistent/taxonomy.db",
    )
    django.setup()

# tax_id, parent, rank, division, mito code, scientific name
TAXA = [
    (1, 1, "no rank", 8, 0, "root"),
    (131567, 1, "no rank", 8, 0, "cellular organisms"),
    (2, 131567, "superkingdom", 0, 0, "Bacteria"),
    (561, 2, "genus", 0, 0, "Escherichia"),
    (562, 561, "species", 0, 0, "Escherichia coli"),
    (2759, 131567, "superkingdom", 1, 1, "Eukaryota"),
    (33208, 2759, "kingdom", 1, 5, "Metazoa"),
    (9604, 33208, "family", 5, 2, "Hominidae"),
    (9605, 9604, "genus", 5, 2, "Homo"),
    (9606, 9605, "species", 5, 2, "Homo sapiens"),
    (63221, 9606, "subspecies", 5, 2, "Homo sapiens neanderthalensis"),
    (9596, 9604, "genus", 5, 2, "Pan"),
    (9598, 9596, "species", 5, 2, "Pan troglodytes"),
    (10088, 33208, "genus", 10, 2, "Mus"),
    (10090, 10088, "species", 10, 2, "Mus musculus"),
]

EXTRA_NAMES = [
    (9606, "human", "genbank common name"),
    (9606, "man", "common name"),
    (9606, "Homo sapiens Linnaeus, 1758", "authority"),
    (9598, "chimpanzee", "genbank common name"),
    (562, "Bacillus coli", "synonym"),
    (562, "Bacterium coli", "synonym"),
]

DIVISIONS = [
    (0, "BCT", "Bacteria"),
    (1, "INV", "Invertebrates"),
    (5, "PRI", "Primates"),
    (8, "UNA", "Unassigned"),
    (10, "ROD", "Rodents"),
]

GENETIC_CODES = [
    (0, "", "Unspecified"),
    (1, "SGC0", "Standard"),
    (2, "SGC1", "Vertebrate Mitochondrial"),
    (5, "SGC4", "Invertebrate Mitochondrial"),
    (11, "", "Bacterial, Archaeal and Plant Plastid"),
]


def write_dump(path, rows):
    with open(path, "w", encoding="utf-8") as handle:
        for row in rows:
            handle.write("\t|\t".join(str(field) for field in row) + "\t|\n")


@pytest.fixture
def dump_dir(tmp_path):
    directory = tmp_path / "dump"
    directory.mkdir()
    write_dump(directory / "division.dmp", [(i, code, name, "") for i, code, name in DIVISIONS])
    write_dump(directory / "gencode.dmp", [(i, abbr, name, "", "") for i, abbr, name in GENETIC_CODES])
    names = [(tax_id, name, "", "scientific name") for tax_id, _, _, _, _, name in TAXA]
    names += [(tax_id, name, "", name_class) for tax_id, name, name_class in EXTRA_NAMES]
    write_dump(directory / "names.dmp", names)
    nodes = []
    for tax_id, parent, rank, division, mito, _ in TAXA:
        gc = 11 if division == 0 else 1
        comment = "code compliant" if tax_id == 562 else ""
        nodes.append((tax_id, parent, rank, "", division, 0, gc, 1, mito, 1, 0, 0, comment))
    write_dump(directory / "nodes.dmp", nodes)
    return directory


@pytest.fixture
def taxdmp_zip(dump_dir, tmp_path):
    archive = tmp_path / "archive" / "taxdmp.zip"
    archive.parent.mkdir()
    with zipfile.ZipFile(archive, "w") as zf:
        for dump in dump_dir.iterdir():
            zf.write(dump, dump.name)
    return archive


@pytest.fixture
def datadir(tmp_path, dump_dir):
    directory = tmp_path / "data"
    with TaxonomyDB(directory / DB_FILENAME) as db:
        db.populate(dump_dir)
    return directory


@pytest.fixture
def taxonomy_db(datadir):
    db = TaxonomyDB(datadir / DB_FILENAME)
    yield db
    db.close()


@pytest.fixture
def make_lineage():
    """Build a root-first lineage of bare nodes from a list of ids."""
    def _make(ids, ranks=None):
        nodes = []
        for i, tax_id in enumerate(ids):
            parent = ids[i - 1] if i else tax_id
            rank = ranks[i] if ranks else "no rank"
            nodes.append(TaxonNode(tax_id, parent, rank, {"scientific name": [f"taxon {tax_id}"]}))
        return nodes
    return _make
