import logging

from taxonomy_backend.classes_node_definition import TreeConsistencyError, format_node

logger = logging.getLogger(__name__)

BOLD, RESET = "\033[1m", "\033[0m"

# diagram connectors
BRANCH = "─┬─ " # node with children
LEAF = "── " # node without children
MIDDLE_CHILD = " ├"
LAST_CHILD = " └"
CONTINUATION = "│"


'''---tree construction---'''
class Tree:
    """Taxonomy tree merged from root-to-node ancestries.

    Nodes live in an id-keyed arena, the parent -> children relation in
    id-keyed sets. Build it with one or more ancestries (or subtree node
    sets), mark the nodes of interest, optionally ``simplify()`` once and
    render it with ``to_diagram()`` or ``to_newick()``.
    """

    def __init__(self, root_id, seed_nodes=()):
        self.root_id = root_id
        self._nodes = {} # tax_id -> TaxonNode, first insertion wins
        self._children = {} # parent tax_id -> set of child tax_ids
        self._marked = set()
        self._format_string = None
        self.simplified = False
        self.add_nodes(seed_nodes)

    def add_nodes(self, nodes): # merge a lineage or subtree node set, safe with overlapping paths
        added = 0
        for node in nodes:
            if node.tax_id not in self._nodes:
                self._nodes[node.tax_id] = node.copy()
                added += 1
            if node.tax_id != node.parent_tax_id:
                self._children.setdefault(node.parent_tax_id, set()).add(node.tax_id)
        logger.debug("Merged %d new node(s), tree now holds %d", added, len(self._nodes))

    def mark_nodes(self, tax_ids): # ids not in the tree are ignored, marks stay a subset of the nodes
        self._marked.update(tax_id for tax_id in tax_ids if tax_id in self._nodes)

    def set_format_string(self, template): # default display template used by the renderers
        self._format_string = template

    '''---accessors---'''
    @property
    def nodes(self):
        return dict(self._nodes)

    @property
    def marked(self):
        return frozenset(self._marked)

    def node(self, tax_id):
        try:
            return self._nodes[tax_id]
        except KeyError:
            raise TreeConsistencyError(
                f"Taxonomy ID {tax_id} is referenced by the tree but was never inserted "
                f"(malformed ancestry: cycle or orphaned parent)") from None

    def children_of(self, tax_id): # ascending id order, the one fixed order every traversal uses
        return sorted(self._children.get(tax_id, ()))

    def __contains__(self, tax_id):
        return tax_id in self._nodes

    def __len__(self):
        return len(self._nodes)

    '''---simplification---'''
    def simplify(self):
        """Contract every unmarked node that has exactly one child.

        Works top-down from the root with an explicit stack: the unique-child
        chain below each child is resolved before descending, so marked nodes
        and real branch points are kept and nothing is contracted twice.
        A second call returns immediately.
        """
        if self.simplified:
            return
        new_children = {}
        stack = [self.root_id]
        while stack:
            parent = stack.pop()
            kept = {self._end_of_chain(child) for child in self._children.get(parent, ())}
            if kept:
                new_children[parent] = kept
                stack.extend(kept)
        self._children = new_children
        self.simplified = True
        logger.debug("Simplified tree: %d node(s) reachable from root %s",
                     1 + sum(len(c) for c in new_children.values()), self.root_id)

    def _end_of_chain(self, tax_id): # follow unique children until a leaf, a branch point or a marked node
        while tax_id not in self._marked:
            children = self._children.get(tax_id)
            if not children or len(children) != 1:
                break
            (tax_id,) = children
        return tax_id

    '''---least common ancestor---'''
    def lowest_common_ancestor(self):
        """Return the LCA node of all marked nodes.

        Walk down from the root while the current node is unmarked and has
        a single child. On a simplified tree this stops at the first branch
        point, or at the shallowest marked node when one marked node is an
        ancestor of the others.
        """
        current = self.root_id
        while current not in self._marked:
            children = self._children.get(current)
            if not children or len(children) != 1:
                break
            (current,) = children
        return self.node(current)

    '''---rendering---'''
    def _text(self, tax_id, template):
        return format_node(self.node(tax_id), template)

    def to_diagram(self, template=None, emphasize=True):
        template = template if template is not None else self._format_string
        lines = []
        stack = [(self.root_id, " ", False)] # (tax_id, prefix, is intermediate sibling)
        while stack:
            tax_id, prefix, intermediate = stack.pop()
            text = self._text(tax_id, template)
            if emphasize and tax_id in self._marked:
                text = f"{BOLD}{text}{RESET}"
            children = self.children_of(tax_id)
            lines.append(f"{prefix}{BRANCH if children else LEAF}{text}")
            if not children:
                continue

            child_prefix = prefix[:-1] + (CONTINUATION if intermediate else " ")
            last = children[-1]
            for child in reversed(children): # reversed so the smallest id is popped first
                if child == last:
                    stack.append((child, child_prefix + LAST_CHILD, False))
                else:
                    stack.append((child, child_prefix + MIDDLE_CHILD, True))
        return "\n".join(lines) + "\n"

    def to_newick(self, template=None):
        """Newick-like text: a node's text comes before its children's group.

        ``A,(B,C)`` is emitted for A with children B and C, and the whole
        expansion of the root is wrapped as ``(...);``.
        """
        template = template if template is not None else self._format_string
        parts = ["("]
        stack = [self.root_id] # ints are nodes to expand, strings are emitted as-is
        while stack:
            item = stack.pop()
            if isinstance(item, str):
                parts.append(item)
                continue
            parts.append(self._text(item, template))
            children = self.children_of(item)
            if not children:
                continue
            group = [",("]
            for i, child in enumerate(children):
                if i:
                    group.append(",")
                group.append(child)
            group.append(")")
            stack.extend(reversed(group))
        parts.append(");")
        return "".join(parts)

    def __str__(self):
        return self.to_diagram()


'''---composition over lineage providers---'''
def make_tree(tax_ids, fetch_lineage, root_id): # tree from the root to all given ids, the ids are marked
    lineages = [fetch_lineage(tax_id) for tax_id in tax_ids]
    if not lineages:
        return Tree(root_id)
    lineages.sort(key=len, reverse=True)
    tree = Tree(root_id, lineages[0])
    for lineage in lineages[1:]:
        tree.add_nodes(lineage)
    tree.mark_nodes(tax_ids)
    return tree


def make_subtree(root_id, fetch_subtree_nodes, species_only=False): # tree rooted at root_id with all its descendants
    tree = Tree(root_id, fetch_subtree_nodes(root_id, species_only))
    tree.mark_nodes([root_id])
    return tree


def get_lca(id_a, id_b, fetch_lineage, root_id):
    """Return the least common ancestor node of ``id_a`` and ``id_b``.

    Both ancestries are merged (longest one as seed), the two ids are
    marked and the tree is simplified: the unbranched stem shared by both
    collapses up to the first real branch point.
    """
    lineage_a, lineage_b = fetch_lineage(id_a), fetch_lineage(id_b)
    longer, shorter = (lineage_a, lineage_b) if len(lineage_a) >= len(lineage_b) else (lineage_b, lineage_a)
    tree = Tree(root_id, longer)
    tree.add_nodes(shorter)
    tree.mark_nodes([id_a, id_b])
    tree.simplify()

    lca = tree.lowest_common_ancestor()
    logger.debug("LCA(%s, %s) = %s", id_a, id_b, lca.tax_id)
    return lca
