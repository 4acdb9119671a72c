"""Wire-level encodings, schemas and signing helpers."""
