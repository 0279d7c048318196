import json
import subprocess

import pytest
from django.test import RequestFactory, override_settings

from taxonomy_app import views
from taxonomy_backend.taxon_lookup import DB_FILENAME


@pytest.fixture
def rf():
    return RequestFactory()


@pytest.fixture
def app_settings(datadir, tmp_path):
    with override_settings(TAXONOMY_DB_PATH=str(datadir / DB_FILENAME), MEDIA_ROOT=str(tmp_path / "media")):
        yield


def payload(response):
    return json.loads(response.content.decode("utf-8"))


def test_home_page(rf):
    response = views.home(rf.get("/"))
    assert response.status_code == 200
    assert b'data-endpoint="/tree/"' in response.content


def test_show(rf, app_settings):
    response = views.show(rf.get("/show/", {"terms": "9606, Escherichia coli"}))

    assert response.status_code == 200
    nodes = payload(response)["nodes"]
    assert [n["tax_id"] for n in nodes] == [9606, 562]
    assert nodes[0]["names"]["genbank common name"] == ["human"]
    assert nodes[1]["mitochondrial_genetic_code"] is None


def test_lineage(rf, app_settings):
    response = views.lineage(rf.get("/lineage/", {"terms": "10090"}))

    lineage = payload(response)["lineages"][0]
    assert [n["tax_id"] for n in lineage] == [1, 131567, 2759, 33208, 10088, 10090]
    assert lineage[-1] == {"tax_id": 10090, "rank": "species", "scientific_name": "Mus musculus"}


def test_tree_diagram(rf, app_settings):
    response = views.tree(rf.get("/tree/", {"terms": "9606,9598,10090", "format": "%taxid"}))

    data = payload(response)
    assert data["tax_ids"] == [9606, 9598, 10090]
    assert data["tree"] == (
        " ─┬─ 1\n"
        "  └─┬─ 33208\n"
        "    ├─┬─ 9604\n"
        "    │ ├── 9598\n"
        "    │ └── 9606\n"
        "    └── 10090\n"
    )


def test_tree_newick(rf, app_settings):
    response = views.tree(rf.get("/tree/", {"terms": "9606,Pan troglodytes", "newick": "true"}))
    assert payload(response)["tree"] == "(root,(Hominidae,(Pan troglodytes,Homo sapiens)));"


def test_subtree(rf, app_settings):
    response = views.subtree(rf.get("/subtree/", {"terms": "9604", "newick": "1", "format": "%taxid",
                                                   "internal": "1", "species": "1"}))

    data = payload(response)
    assert data["root"] == 9604
    assert data["tree"] == "(9604,(9596,(9598),9605,(9606)));"


def test_lca(rf, app_settings):
    response = views.lca(rf.get("/lca/", {"terms": "9606,9598,562"}))

    assert payload(response)["lcas"] == [
        {"taxid1": 9606, "taxid2": 9598, "lca_taxid": 9604, "lca_name": "Hominidae"},
        {"taxid1": 9606, "taxid2": 562, "lca_taxid": 131567, "lca_name": "cellular organisms"},
        {"taxid1": 9598, "taxid2": 562, "lca_taxid": 131567, "lca_name": "cellular organisms"},
    ]


@pytest.mark.parametrize("view, params, status", [
    (views.lca, {"terms": "9606"}, 400),
    (views.show, {}, 400),
    (views.show, {"terms": "424242"}, 404),
    (views.tree, {"terms": "No such taxon"}, 404),
    (views.subtree, {"terms": "9604,9605"}, 400),
])
def test_error_responses(rf, app_settings, view, params, status):
    response = view(rf.get("/", params))
    assert response.status_code == status
    assert "error" in payload(response)


def test_uninitialized_database_is_a_server_error(rf, tmp_path):
    with override_settings(TAXONOMY_DB_PATH=str(tmp_path / "empty" / DB_FILENAME)):
        response = views.show(rf.get("/show/", {"terms": "9606"}))

    assert response.status_code == 500
    assert "populate" in payload(response)["error"]


def test_json_views_reject_post(rf, app_settings):
    assert views.show(rf.post("/show/", {"terms": "9606"})).status_code == 405


def test_populate_requires_post_and_email(rf, app_settings):
    assert views.run_populate(rf.get("/populate/")).status_code == 405
    assert views.run_populate(rf.post("/populate/", {"email": " "})).status_code == 400


def test_populate_runs_the_cli(rf, app_settings, datadir, tmp_path, monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="[INFO] Database populated.\n")

    monkeypatch.setattr(views.subprocess, "run", fake_run)
    response = views.run_populate(rf.post("/populate/", {"email": "me@example.org"}))

    assert response.status_code == 200
    data = payload(response)
    cmd = calls[0]
    assert cmd[1:3] == ["-m", "taxonomy_backend.taxonomy"]
    assert cmd[cmd.index("--datadir") + 1] == str(datadir)
    assert cmd[-3:] == ["populate", "--email", "me@example.org"]
    assert data["log_url"] == f"/media/populate/{data['job_id']}/populate.log"
    log_file = tmp_path / "media" / "populate" / data["job_id"] / "populate.log"
    assert log_file.read_text(encoding="utf-8") == "[INFO] Database populated.\n"


def test_populate_failure_is_reported(rf, app_settings, monkeypatch):
    def fake_run(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="[ERROR] Checksum mismatch\n")

    monkeypatch.setattr(views.subprocess, "run", fake_run)
    response = views.run_populate(rf.post("/populate/", {"email": "me@example.org"}))

    assert response.status_code == 500
    assert payload(response)["stderr"] == "[ERROR] Checksum mismatch\n"


def test_each_request_opens_and_closes_its_own_database(rf, app_settings, monkeypatch):
    opened = []

    class RecordingDB(views.TaxonomyDB):
        def __init__(self, path):
            super().__init__(path)
            opened.append(self)

    monkeypatch.setattr(views, "TaxonomyDB", RecordingDB)
    assert views.show(rf.get("/show/", {"terms": "9606"})).status_code == 200
    assert views.show(rf.get("/show/", {"terms": "424242"})).status_code == 404
    assert views.lca(rf.get("/lca/", {"terms": "9606,9598"})).status_code == 200

    assert len(opened) == 3
    assert len({id(db) for db in opened}) == 3
    assert all(db._conn is None for db in opened)
