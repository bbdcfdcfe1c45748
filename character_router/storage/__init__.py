from .base import DocumentStore
from .factory import build_document_store
from .postgres_store import PostgresDocumentStore
from .store import SqliteDocumentStore

__all__ = ["DocumentStore", "PostgresDocumentStore", "SqliteDocumentStore", "build_document_store"]
