"""CodeMesh Signatures: typed function surfaces generated from tool schemas."""

from codemesh.signatures.generator import SignatureGenerator, render_doc_text
from codemesh.signatures.naming import derive_function_names, sanitize_identifier
from codemesh.signatures.schema import TranslatedType, TypeTranslator, translate_schema

__all__ = [
    "SignatureGenerator",
    "TranslatedType",
    "TypeTranslator",
    "derive_function_names",
    "render_doc_text",
    "sanitize_identifier",
    "translate_schema",
]
