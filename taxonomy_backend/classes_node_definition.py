'''---taxonomy constants---'''
NCBI_ROOT_ID = 1 # NCBI universal root, callers pass it to the engine explicitly
NO_RANK = "no rank"
SPECIES_RANK = "species"

SCIENTIFIC_NAME = "scientific name"
SYNONYM = "synonym"
COMMON_NAME = "common name"
GENBANK_COMMON_NAME = "genbank common name"
AUTHORITY = "authority"

UNSPECIFIED_CODE = "Unspecified" # gencode name used by NCBI when no mitochondrial code applies


'''---errors---'''
class TaxonomyError(Exception):
    """Base class for every error raised by the taxonomy backend."""


class NotFound(TaxonomyError, LookupError):
    """Unknown taxonomy id or scientific name."""


class MalformedRecord(TaxonomyError, ValueError):
    """A node record is missing mandatory facts (e.g. its scientific name)."""


class TreeConsistencyError(TaxonomyError, RuntimeError):
    """The tree engine could not find a node it inserted itself.

    This only happens when a collaborator handed over a malformed ancestry
    (a cycle or an orphaned parent) and is never recoverable.
    """


class DatabaseNotInitialized(TaxonomyError):
    """The local database has no taxonomy tables yet."""


'''---core classes---'''
class TaxonNode:
    def __init__(self, tax_id, parent_tax_id, rank, names, division="", genetic_code="",
                 mito_genetic_code=None, comments=None):
        self.tax_id = int(tax_id)
        self.parent_tax_id = int(parent_tax_id) # root's parent is itself
        self.rank = rank
        self.names = {name_class: list(values) for name_class, values in (names or {}).items()}
        self.division = division
        self.genetic_code = genetic_code
        self.mito_genetic_code = mito_genetic_code # not all organisms have mitochondria
        self.comments = comments # only a small fraction of nodes have comments

    @property
    def scientific_name(self):
        values = self.names.get(SCIENTIFIC_NAME)
        if not values:
            raise MalformedRecord(f"Taxonomy ID {self.tax_id} has no scientific name")
        return values[0]

    @property
    def is_root(self):
        return self.tax_id == self.parent_tax_id

    def add_name(self, name_class, name): # names arrive one row at a time from the store
        self.names.setdefault(name_class, []).append(name)

    def copy(self): # independent snapshot, trees never share node objects with callers
        return TaxonNode(self.tax_id, self.parent_tax_id, self.rank, self.names,
                         division=self.division, genetic_code=self.genetic_code,
                         mito_genetic_code=self.mito_genetic_code, comments=self.comments)

    def describe(self):
        header = f"{self.scientific_name} - {self.rank}"
        lines = [header, "-" * len(header), f"NCBI Taxonomy ID: {self.tax_id}"]

        if self.names.get(SYNONYM):
            lines.append("Same as:")
            lines.extend(f"* {synonym}" for synonym in self.names[SYNONYM])

        if self.names.get(GENBANK_COMMON_NAME):
            lines.append(f"Commonly named {self.names[GENBANK_COMMON_NAME][0]}.")

        if self.names.get(COMMON_NAME):
            lines.append("Also known as:")
            lines.extend(f"* {name}" for name in self.names[COMMON_NAME])

        if self.names.get(AUTHORITY):
            lines.append("First description:")
            lines.extend(f"* {authority}" for authority in self.names[AUTHORITY])

        lines.append(f"Part of the {self.division}.")
        lines.append(f"Uses the {self.genetic_code} genetic code.")

        if self.mito_genetic_code is not None:
            lines.append(f"Its mitochondria use the {self.mito_genetic_code} genetic code.")

        text = "\n".join(lines) + "\n"
        if self.comments is not None:
            text += f"\nComments: {self.comments}"
        return text

    def __eq__(self, other):
        if not isinstance(other, TaxonNode):
            return NotImplemented
        return vars(self) == vars(other)

    def __hash__(self):
        return hash(self.tax_id)

    def __repr__(self):
        names = self.names.get(SCIENTIFIC_NAME) or ["?"]
        return f"TaxonNode(tax_id={self.tax_id}, parent_tax_id={self.parent_tax_id}, rank={self.rank!r}, name={names[0]!r})"

    def __str__(self):
        return self.describe()


def format_node(node, template=None): # display text of a node, template substitution happens at render time only
    if template is None:
        return node.describe()
    text = template
    text = text.replace("%taxid", str(node.tax_id))
    text = text.replace("%name", node.scientific_name)
    text = text.replace("%rank", node.rank)
    return text
