from django.shortcuts import render
from django.http import JsonResponse, HttpResponse
from django.conf import settings
from functools import wraps
from itertools import combinations
import datetime
import os
import random
import string
import subprocess
import sys

from taxonomy_backend.classes_node_definition import NCBI_ROOT_ID, NotFound, TaxonomyError
from taxonomy_backend.taxon_lookup import TaxonomyDB, lineage_provider
from taxonomy_backend.tree_building import get_lca, make_subtree, make_tree

# --------------------------
# Helper functions
# --------------------------

def generate_job_id():
    timestamp = datetime.datetime.now().strftime("%Y%m%d-%H%M%S-")
    random_string = ''.join(random.choices(string.ascii_letters + string.digits, k=10))
    return timestamp + random_string

def create_job_directory(job_id):
    job_dir = os.path.join(settings.MEDIA_ROOT, "populate", job_id)
    os.makedirs(job_dir, exist_ok=True)
    return job_dir

def get_db(): # one connection per request, closed by the caller
    return TaxonomyDB(settings.TAXONOMY_DB_PATH)

def root_id():
    return getattr(settings, "TAXONOMY_ROOT_ID", NCBI_ROOT_ID)

def query_terms(request, minimum=1, maximum=None):
    raw = request.GET.get("terms", "")
    terms = [t.strip() for t in raw.split(",") if t.strip()]
    if len(terms) < minimum:
        raise ValueError(f"At least {minimum} taxon term(s) required in 'terms'")
    if maximum is not None and len(terms) > maximum:
        raise ValueError(f"At most {maximum} taxon term(s) allowed in 'terms'")
    return terms

def query_flag(request, name):
    return request.GET.get(name, "").strip().lower() in ("1", "true", "yes", "on")

def node_to_dict(node):
    return {
        "tax_id": node.tax_id,
        "parent_tax_id": node.parent_tax_id,
        "scientific_name": node.scientific_name,
        "rank": node.rank,
        "division": node.division,
        "genetic_code": node.genetic_code,
        "mitochondrial_genetic_code": node.mito_genetic_code,
        "comments": node.comments,
        "names": node.names,
    }

def render_tree(tree, request):
    newick = query_flag(request, "newick")
    template = request.GET.get("format") or ("%name" if newick else "%rank: %name")
    if not query_flag(request, "internal"):
        tree.simplify()
    if newick:
        return tree.to_newick(template=template)
    return tree.to_diagram(template=template, emphasize=False)

def taxonomy_json_view(view): # turn backend errors into JSON error responses
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if request.method != "GET":
            return HttpResponse("Invalid request", status=405)
        try:
            return JsonResponse(view(request, *args, **kwargs))
        except NotFound as exc:
            return JsonResponse({"error": str(exc)}, status=404)
        except TaxonomyError as exc:
            return JsonResponse({"error": str(exc)}, status=500)
        except ValueError as exc:
            return JsonResponse({"error": str(exc)}, status=400)
    return wrapper

# --------------------------
# Views
# --------------------------

def home(request):
    return render(request, "taxonomy_app/home.html")

@taxonomy_json_view
def show(request):
    terms = query_terms(request)
    with get_db() as db:
        nodes = db.get_nodes(db.terms_to_taxids(terms))
    return {"nodes": [node_to_dict(node) for node in nodes]}

@taxonomy_json_view
def lineage(request):
    terms = query_terms(request)
    lineages = []
    with get_db() as db:
        for tax_id in db.terms_to_taxids(terms):
            nodes = db.get_lineage(tax_id, root_id())
            lineages.append([{"tax_id": n.tax_id, "rank": n.rank, "scientific_name": n.scientific_name} for n in nodes])
    return {"lineages": lineages}

@taxonomy_json_view
def tree(request):
    terms = query_terms(request)
    with get_db() as db:
        tax_ids = db.terms_to_taxids(terms)
        taxonomy_tree = make_tree(tax_ids, lineage_provider(db, root_id()), root_id())
    return {"tax_ids": tax_ids, "tree": render_tree(taxonomy_tree, request)}

@taxonomy_json_view
def subtree(request):
    terms = query_terms(request, maximum=1)
    with get_db() as db:
        (subtree_root,) = db.terms_to_taxids(terms)
        taxonomy_tree = make_subtree(subtree_root, db.get_subtree_nodes, species_only=query_flag(request, "species"))
    return {"root": subtree_root, "tree": render_tree(taxonomy_tree, request)}

@taxonomy_json_view
def lca(request):
    terms = query_terms(request, minimum=2)
    results = []
    with get_db() as db:
        tax_ids = db.terms_to_taxids(terms)
        fetch_lineage = lineage_provider(db, root_id())
        for id_a, id_b in combinations(tax_ids, 2):
            ancestor = get_lca(id_a, id_b, fetch_lineage, root_id())
            results.append({
                "taxid1": id_a,
                "taxid2": id_b,
                "lca_taxid": ancestor.tax_id,
                "lca_name": ancestor.scientific_name,
            })
    return {"lcas": results}

def run_populate(request):
    if request.method != "POST":
        return HttpResponse("Invalid request", status=405)

    email = request.POST.get("email", "").strip()
    if not email:
        return JsonResponse({"error": "Email is required"}, status=400)

    job_id = generate_job_id()
    job_dir = create_job_directory(job_id)
    log_path = os.path.join(job_dir, "populate.log")

    cmd = [
        sys.executable,
        "-m", "taxonomy_backend.taxonomy",
        "--verbose",
        "--datadir", os.path.dirname(str(settings.TAXONOMY_DB_PATH)),
        "populate",
        "--email", email,
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, cwd=str(settings.BASE_DIR_BACKEND))
    except OSError as exc:
        return JsonResponse({"error": str(exc)}, status=500)

    with open(log_path, "w", encoding="utf-8") as handle:
        handle.write(result.stderr)

    if result.returncode != 0:
        return JsonResponse({
            "error": "Populating the taxonomy database failed.",
            "stderr": result.stderr,
            "stdout": result.stdout,
            "cmd": result.args,
        }, status=500)

    rel_path = os.path.relpath(log_path, settings.MEDIA_ROOT).replace("\\", "/")
    return JsonResponse({
        "message": "Taxonomy database populated successfully.",
        "log_url": settings.MEDIA_URL + rel_path,
        "job_id": job_id,
    })
