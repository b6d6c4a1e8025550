"""Configuration management for the Second Brain retrieval engine."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# API Keys
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
HUGGINGFACE_API_KEY = os.getenv("HUGGINGFACE_API_KEY")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:3001"
).split(",")

# Storage backend: "memory" or "supabase"
STORE_BACKEND = os.getenv("STORE_BACKEND", "memory")

# Embedding Configuration
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "sentence-transformers/all-mpnet-base-v2")
EMBEDDING_DIMENSION = int(os.getenv("EMBEDDING_DIMENSION", "768"))
EMBEDDING_MAX_RETRIES = int(os.getenv("EMBEDDING_MAX_RETRIES", "3"))
EMBEDDING_INITIAL_DELAY = float(os.getenv("EMBEDDING_INITIAL_DELAY", "1.0"))
EMBEDDING_TIMEOUT = float(os.getenv("EMBEDDING_TIMEOUT", "30.0"))
EMBEDDING_CONCURRENCY = int(os.getenv("EMBEDDING_CONCURRENCY", "4"))

# Answer generation
ANSWER_MODEL = os.getenv("ANSWER_MODEL", "llama-3.1-8b-instant")
ANSWER_MAX_TOKENS = int(os.getenv("ANSWER_MAX_TOKENS", "1000"))
ANSWER_TIMEOUT_SECONDS = float(os.getenv("ANSWER_TIMEOUT_SECONDS", "30.0"))

# Chunking Configuration
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "1000"))  # characters
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))  # characters

# Index writes
INDEX_WRITE_MAX_RETRIES = int(os.getenv("INDEX_WRITE_MAX_RETRIES", "3"))
INDEX_WRITE_INITIAL_DELAY = float(os.getenv("INDEX_WRITE_INITIAL_DELAY", "0.5"))

# Retrieval Configuration
RETRIEVAL_TOP_N = int(os.getenv("RETRIEVAL_TOP_N", "20"))
STRATEGY_TIMEOUT_SECONDS = float(os.getenv("STRATEGY_TIMEOUT_SECONDS", "5.0"))
RRF_K = int(os.getenv("RRF_K", "60"))
TEMPORAL_EMPTY_POLICY = os.getenv("TEMPORAL_EMPTY_POLICY", "strict").strip().lower()  # "strict" or "relax"

# Context assembly
MAX_CHUNKS = int(os.getenv("MAX_CHUNKS", "5"))
CONTEXT_BUDGET = int(os.getenv("CONTEXT_BUDGET", "4000"))
CONTEXT_BUDGET_UNIT = os.getenv("CONTEXT_BUDGET_UNIT", "chars")  # "chars" or "tokens"
PER_DOCUMENT_CAP = int(os.getenv("PER_DOCUMENT_CAP", "2"))
TOKEN_ENCODING = os.getenv("TOKEN_ENCODING", "o200k_base")

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
