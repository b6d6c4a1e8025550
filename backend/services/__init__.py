"""Services for the Second Brain retrieval engine."""
from .chunking_engine import ChunkingEngine
from .embedding_model import EmbeddingModel
from .index_store import IndexStore, InMemoryIndexStore
from .index_writer import IndexWriter, IndexedDocument
from .query_analyzer import QueryAnalyzer
from .retrieval_engine import RetrievalEngine, TemporalFallbackPolicy
from .rank_fusion import fuse
from .context_assembler import ContextAssembler
from .llm_client import LLMClient, LLMResponse, LLMError, LLMClientError, GeneratedAnswer, FallbackAnswer
from .knowledge_base import KnowledgeBase, build_knowledge_base

__all__ = ['ChunkingEngine', 'EmbeddingModel', 'IndexStore', 'InMemoryIndexStore', 'IndexWriter', 'IndexedDocument', 'QueryAnalyzer', 'RetrievalEngine', 'TemporalFallbackPolicy', 'fuse', 'ContextAssembler', 'LLMClient', 'LLMResponse', 'LLMError', 'LLMClientError', 'GeneratedAnswer', 'FallbackAnswer', 'KnowledgeBase', 'build_knowledge_base']
