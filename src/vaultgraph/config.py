from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    # Default DB path used by the CLI.
    db_path: str = os.getenv("VAULTGRAPH_DB_PATH", "./data/vault.db")
    vault_path: str | None = os.getenv("VAULTGRAPH_VAULT_PATH")

    # Embeddings: "ollama" (remote /api/embed) or "fastembed" (local)
    embed_backend: str = os.getenv("VAULTGRAPH_EMBED_BACKEND", "ollama")
    embed_model: str = os.getenv("VAULTGRAPH_EMBED_MODEL", "nomic-embed-text")
    embed_batch_size: int = int(os.getenv("VAULTGRAPH_EMBED_BATCH_SIZE", "2048"))
    embed_batch_delay_s: float = float(os.getenv("VAULTGRAPH_EMBED_BATCH_DELAY_S", "0.1"))
    keyword_dims: int = int(os.getenv("VAULTGRAPH_KEYWORD_DIMS", "256"))

    # Ollama (chunk extraction, summaries, keyword reduction)
    ollama_base_url: str = os.getenv("VAULTGRAPH_OLLAMA_BASE_URL", "http://localhost:11434")
    ollama_model: str = os.getenv("VAULTGRAPH_OLLAMA_MODEL", "llama3.1:8b")
    ollama_temperature: float = float(os.getenv("VAULTGRAPH_OLLAMA_TEMPERATURE", "0.2"))
    ollama_timeout_s: float = float(os.getenv("VAULTGRAPH_OLLAMA_TIMEOUT_S", "120"))

    # Chunking / bulk import
    window_size: int = int(os.getenv("VAULTGRAPH_WINDOW_SIZE", "8000"))
    import_concurrency: int = int(os.getenv("VAULTGRAPH_IMPORT_CONCURRENCY", "10"))

    log_level: str = os.getenv("VAULTGRAPH_LOG_LEVEL", "INFO")
