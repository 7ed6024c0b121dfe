"""CodeMesh Augmentation Store: agent-authored notes on real tool output."""

from codemesh.augmentation.store import AugmentationStore, parse_document, render_entry

__all__ = ["AugmentationStore", "parse_document", "render_entry"]
