import argparse
import csv
import logging
import os
import sys
import time
from itertools import combinations
from pathlib import Path

from taxonomy_backend.classes_node_definition import NCBI_ROOT_ID, NO_RANK, TaxonomyError
from taxonomy_backend.dump_download import populate_db
from taxonomy_backend.taxon_lookup import DB_FILENAME, TaxonomyDB, lineage_provider
from taxonomy_backend.tree_building import get_lca, make_subtree, make_tree

logger = logging.getLogger("taxonomy_backend")

APP_NAME = "taxtree"
DEFAULT_EMAIL = "anonymous@example.com"
DEFAULT_DIAGRAM_FORMAT = "%rank: %name"
DEFAULT_NEWICK_FORMAT = "%name"


class HelpFmt(argparse.ArgumentDefaultsHelpFormatter, argparse.RawTextHelpFormatter): # formatter class for displaying default values in the help output
    pass


'''---configuration---'''
def default_datadir(): # $TAXTREE_DATA_DIR, else the XDG data home
    env_dir = os.environ.get("TAXTREE_DATA_DIR")
    if env_dir:
        return Path(env_dir)
    xdg_home = os.environ.get("XDG_DATA_HOME") or os.path.join(os.path.expanduser("~"), ".local", "share")
    return Path(xdg_home) / APP_NAME


def configure_logging(verbose=False, debug=False):
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


'''---functions for result output---'''
out_file_handle = None # global
def log(msg="", end="\n"): # print to console and optionally to a text file
    sys.stdout.write(str(msg) + end)
    if out_file_handle:
        out_file_handle.write(str(msg) + end)


class _LogWriter: # file-like target for csv writers, routed through log()
    def write(self, s):
        log(s, end="")


def csv_writer():
    return csv.writer(_LogWriter(), lineterminator="\n")


def use_emphasis():
    return out_file_handle is None and sys.stdout.isatty()


def show(nodes, as_csv=False): # describe the nodes, or one CSV row per node
    if as_csv:
        writer = csv_writer()
        writer.writerow(["taxid", "scientific_name", "rank", "division", "genetic_code",
                         "mitochondrial_genetic_code"])
        for node in nodes:
            writer.writerow([node.tax_id, node.scientific_name, node.rank, node.division,
                             node.genetic_code, node.mito_genetic_code or ""])
    else:
        for node in nodes:
            log(node.describe())


def show_lineages(lineages, ranks=False, as_csv=False): # ranks=True keeps only nodes with a named rank
    writer = csv_writer() if as_csv else None
    for lineage in lineages:
        nodes = [node for node in lineage if not ranks or node.rank != NO_RANK]
        if writer:
            writer.writerow([f"{node.rank}:{node.scientific_name}:{node.tax_id}" for node in nodes])
            continue

        entries = [node for node in nodes if not node.is_root]
        log("root")
        for i, node in enumerate(entries, start=1):
            connector = "└── " if i == len(entries) else "└┬─ "
            log(f"{' ' * (i + 1)}{connector}{node.rank}: {node.scientific_name} (taxid: {node.tax_id})")


def show_tree(tree, internal=False, newick=False, format_string=None): # internal=True keeps single-child nodes
    if format_string is not None:
        tree.set_format_string(format_string)
    elif newick:
        tree.set_format_string(DEFAULT_NEWICK_FORMAT)
    else:
        tree.set_format_string(DEFAULT_DIAGRAM_FORMAT)

    if not internal:
        tree.simplify()

    if newick:
        log(tree.to_newick())
    else:
        log(tree.to_diagram(emphasize=use_emphasis()), end="")


def show_lcas(lcas, as_csv=False): # lcas is a list of (node1, node2, lca) triples
    writer = csv_writer() if as_csv else None
    if writer:
        writer.writerow(["name1", "taxid1", "name2", "taxid2", "lca_name", "lca_taxid"])
    for node1, node2, lca in lcas:
        if writer:
            writer.writerow([node1.scientific_name, node1.tax_id, node2.scientific_name, node2.tax_id,
                             lca.scientific_name, lca.tax_id])
        else:
            log(f"LCA({node1.scientific_name}, {node2.scientific_name}) = {lca.scientific_name}")


'''---command handlers---'''
def cmd_populate(args, db):
    if args.taxdmp:
        db.populate_from_archive(args.taxdmp)
    else:
        populate_db(args.datadir, args.email, db)


def cmd_show(args, db):
    show(db.get_nodes(db.terms_to_taxids(args.terms)), as_csv=args.csv)


def cmd_lineage(args, db):
    lineages = [db.get_lineage(tax_id, args.root_id) for tax_id in db.terms_to_taxids(args.terms)]
    show_lineages(lineages, ranks=args.ranks, as_csv=args.csv)


def cmd_tree(args, db):
    tax_ids = db.terms_to_taxids(args.terms)
    tree = make_tree(tax_ids, lineage_provider(db, args.root_id), args.root_id)
    show_tree(tree, internal=args.internal, newick=args.newick, format_string=args.format)


def cmd_subtree(args, db):
    (root_id,) = db.terms_to_taxids([args.term])
    tree = make_subtree(root_id, db.get_subtree_nodes, species_only=args.species)
    show_tree(tree, internal=args.internal, newick=args.newick, format_string=args.format)


def cmd_lca(args, db):
    tax_ids = db.terms_to_taxids(args.terms)
    fetch_lineage = lineage_provider(db, args.root_id)
    lcas = []
    for id_a, id_b in combinations(tax_ids, 2):
        node_a, node_b = db.get_node(id_a), db.get_node(id_b)
        lcas.append((node_a, node_b, get_lca(id_a, id_b, fetch_lineage, args.root_id)))
    show_lcas(lcas, as_csv=args.csv)


def build_parser():
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Explore the NCBI Taxonomy database from a local copy.",
        formatter_class=HelpFmt,
        epilog=(
            "Examples:\n"
            "  # Download the latest dump and build the local database\n"
            "  taxtree -v populate --email me@example.org\n\n"
            "  # Smallest tree holding human, chimpanzee and mouse, in Newick format\n"
            "  taxtree tree 9606 Pan_troglodytes 10090 --newick\n\n"
            "  # Least common ancestors of every pair\n"
            "  taxtree lca 9606 9598 10090 --csv\n"
        )
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Be verbose")
    parser.add_argument("-d", "--debug", action="store_true", help="Be extremely verbose")
    parser.add_argument("--datadir", type=Path, default=default_datadir(),
                        help="Directory holding the local taxonomy database")
    parser.add_argument("--root_id", type=int, default=NCBI_ROOT_ID, help="Taxonomy ID of the global root")
    parser.add_argument("--out", type=str, help="Optional path to also write output to a plain text file")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_show = subparsers.add_parser("show", help="Show NCBI Taxonomy ID(s) or scientific name(s)",
                                   description="Lookup for NCBI Taxonomy ID(s) or scientific name(s) and show the "
                                               "results; no search is performed, only exact matches are returned.")
    p_show.add_argument("terms", nargs="+", help="The NCBI Taxonomy ID(s) or scientific name(s)")
    p_show.add_argument("-c", "--csv", action="store_true", help="Output the results as CSV")
    p_show.set_defaults(func=cmd_show)

    p_lineage = subparsers.add_parser("lineage", help="Output the lineage of the node(s)",
                                      description="Output the lineage of the node(s), i.e. all nodes in the path to the root.")
    p_lineage.add_argument("terms", nargs="+", help="The NCBI Taxonomy ID(s) or scientific name(s)")
    p_lineage.add_argument("-r", "--ranks", action="store_true", help="Keep only the nodes that have a named rank")
    p_lineage.add_argument("-c", "--csv", action="store_true",
                           help="Output the results as CSV; rows may have different numbers of columns,\n"
                                "each cell is of the form rank:scientific name:taxid")
    p_lineage.set_defaults(func=cmd_lineage)

    p_populate = subparsers.add_parser("populate", help="(Re)populate the local taxonomy database",
                                       description="(Re)populate the local taxonomy database by downloading the "
                                                   "latest release from the NCBI servers.")
    p_populate.add_argument("-e", "--email", default=DEFAULT_EMAIL, help="Use that email when connecting to NCBI servers")
    p_populate.add_argument("--taxdmp", type=Path,
                            help="Don't download the dump and use that file instead; it should be exactly\n"
                                 "the same as 'ftp.ncbi.nih.gov/pub/taxonomy/taxdmp.zip'")
    p_populate.set_defaults(func=cmd_populate)

    tree_help = ("Warning: by default internal nodes with a single child are hidden,\n"
                 "use -i/--internal to show them.")
    format_help = "Format the nodes with this string (%%rank, %%name and %%taxid are replaced)"

    p_tree = subparsers.add_parser("tree", help="Make a tree from the root to all given IDs",
                                   description="Make a tree from the root to all given IDs.\n" + tree_help,
                                   formatter_class=HelpFmt)
    p_tree.add_argument("terms", nargs="+", help="The NCBI Taxonomy IDs or scientific name(s)")
    p_tree.add_argument("-i", "--internal", action="store_true", help="Show all internal nodes")
    p_tree.add_argument("-n", "--newick", action="store_true", help="Print the tree in Newick format")
    p_tree.add_argument("-f", "--format", help=format_help)
    p_tree.set_defaults(func=cmd_tree)

    p_subtree = subparsers.add_parser("subtree", help="Make a tree with the given ID as root",
                                      description="Make a tree with the given ID as root.\n" + tree_help,
                                      formatter_class=HelpFmt)
    p_subtree.add_argument("term", help="The NCBI Taxonomy ID or scientific name")
    p_subtree.add_argument("-s", "--species", action="store_true", help="Stop at species instead of tips (can be subspecies)")
    p_subtree.add_argument("-i", "--internal", action="store_true", help="Show all internal nodes")
    p_subtree.add_argument("-n", "--newick", action="store_true", help="Print the tree in Newick format")
    p_subtree.add_argument("-f", "--format", help=format_help)
    p_subtree.set_defaults(func=cmd_subtree)

    p_lca = subparsers.add_parser("lca", help="Return the Last Common Ancestor (LCA) between the taxa",
                                  description="Return the Last Common Ancestor (LCA) between the taxa.\n"
                                              "If more than two taxa are given, return the LCA for all pairs.")
    p_lca.add_argument("terms", nargs="+", help="The NCBI Taxonomy IDs or scientific names")
    p_lca.add_argument("-c", "--csv", action="store_true", help="Print the results in CSV; the first row contains the headers")
    p_lca.set_defaults(func=cmd_lca)

    return parser


def main(argv=None):
    global out_file_handle

    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose, debug=args.debug)

    if args.command == "lca" and len(args.terms) < 2:
        logger.error("The lca command needs at least two taxa.")
        return 2

    if args.out:
        out_file_handle = open(args.out, "w", encoding="utf-8")

    total_start = time.time()
    db = TaxonomyDB(Path(args.datadir) / DB_FILENAME)
    try:
        args.func(args, db)
    except TaxonomyError as e:
        logger.error("%s", e)
        return 1
    finally:
        db.close()
        if out_file_handle:
            out_file_handle.close()
            out_file_handle = None

    logger.info("All steps completed in %.2f sec", time.time() - total_start)
    return 0


if __name__ == "__main__":
    sys.exit(main())
