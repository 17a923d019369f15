"""Document graph ingester.

Listens to document-creation actions on a Hyperion stream, resolves each
content hash against chain state and upserts the document into a graph store.
"""

__version__ = "0.1.0"
