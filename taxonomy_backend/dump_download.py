"""Download, verify and unpack the NCBI taxonomy dump (``taxdmp.zip``)."""

from __future__ import annotations

import hashlib
import logging
import os
import zipfile
from pathlib import Path
from typing import Optional

import requests

from taxonomy_backend.classes_node_definition import TaxonomyError

logger = logging.getLogger(__name__)

NCBI_TAXONOMY_URL = "https://ftp.ncbi.nih.gov/pub/taxonomy"
TAXDUMP_ZIP = "taxdmp.zip"
TAXDUMP_MD5 = "taxdmp.zip.md5"

# files shipped inside taxdmp.zip
DUMP_FILES = (
    "citations.dmp",
    "delnodes.dmp",
    "division.dmp",
    "gc.prt",
    "gencode.dmp",
    "merged.dmp",
    "names.dmp",
    "nodes.dmp",
    "readme.txt",
)

CHUNK_SIZE = 1 << 20


class DownloadError(TaxonomyError):
    """The dump could not be retrieved from the NCBI servers."""


class IntegrityError(TaxonomyError):
    """The downloaded archive does not match its published MD5 sum."""


def _fetch(session, url, target: Path, email: str, timeout: float) -> None:
    logger.debug("Retrieving %s...", url)
    try:
        with session.get(url, headers={"From": email}, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            with open(target, "wb") as out:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    out.write(chunk)
    except requests.RequestException as e:
        raise DownloadError(f"Failed to download {url}: {e}") from e


def download_taxdump(datadir, email: str, session: Optional[requests.Session] = None,
                     base_url: str = NCBI_TAXONOMY_URL, timeout: float = 60) -> Path:
    """Download the latest ``taxdmp.zip`` and ``taxdmp.zip.md5`` into ``datadir``.

    The e-mail address is sent as the ``From`` header, which is how NCBI asks
    automated clients to identify themselves.
    """
    datadir = Path(datadir)
    datadir.mkdir(parents=True, exist_ok=True)
    session = session or requests.Session()

    logger.debug("Contacting %s...", base_url)
    _fetch(session, f"{base_url}/{TAXDUMP_MD5}", datadir / TAXDUMP_MD5, email, timeout)
    _fetch(session, f"{base_url}/{TAXDUMP_ZIP}", datadir / TAXDUMP_ZIP, email, timeout)
    logger.debug("Download finished.")
    return datadir / TAXDUMP_ZIP


def md5sum(path) -> str:
    hasher = hashlib.md5()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def check_integrity(datadir) -> None:
    """Compare the MD5 sum of ``taxdmp.zip`` with the one in ``taxdmp.zip.md5``."""
    datadir = Path(datadir)
    logger.debug("Computing MD5 sum...")
    digest = md5sum(datadir / TAXDUMP_ZIP)
    ref_digest = (datadir / TAXDUMP_MD5).read_text(encoding="ascii").strip()[:32]

    if digest != ref_digest:
        logger.warning("Expected sum is: %s", ref_digest)
        logger.warning("Computed sum is: %s", digest)
        raise IntegrityError(f"Checksum mismatch for {datadir / TAXDUMP_ZIP}")


def extract_dump(archive, datadir=None) -> Path:
    """Extract every member of ``archive`` flat into ``datadir`` (defaults to the
    archive's directory). Member paths are reduced to their basename."""
    archive = Path(archive)
    datadir = Path(datadir) if datadir is not None else archive.parent
    datadir.mkdir(parents=True, exist_ok=True)

    with zipfile.ZipFile(archive) as zf:
        for member in zf.infolist():
            if member.is_dir():
                continue
            name = os.path.basename(member.filename)
            if not name:
                continue
            outpath = datadir / name
            with zf.open(member) as src, open(outpath, "wb") as out:
                for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
                    out.write(chunk)
            logger.debug("Extracted %s", outpath)
    return datadir


def remove_temp_files(datadir) -> None:
    datadir = Path(datadir)
    for name in (TAXDUMP_ZIP, TAXDUMP_MD5) + DUMP_FILES:
        path = datadir / name
        if path.exists():
            path.unlink()
            logger.debug("Removed %s", path)


def populate_db(datadir, email: str, db, session: Optional[requests.Session] = None) -> None:
    """Full pipeline: download, verify, extract, load into ``db`` and clean up."""
    datadir = Path(datadir)
    logger.info("Downloading data from %s...", NCBI_TAXONOMY_URL)
    download_taxdump(datadir, email, session=session)
    logger.info("Checking download integrity...")
    check_integrity(datadir)
    logger.info("Everything's OK!")
    logger.info("Extracting dumps...")
    extract_dump(datadir / TAXDUMP_ZIP, datadir)
    try:
        db.populate(datadir)
    finally:
        logger.info("Removing temporary files.")
        remove_temp_files(datadir)
