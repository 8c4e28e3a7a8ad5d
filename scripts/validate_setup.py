#!/usr/bin/env python
"""Validate setup - check dependencies, configuration and the Ollama service."""
import sys
import asyncio
from pathlib import Path

# Color codes for terminal output
GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
BLUE = "\033[94m"
RESET = "\033[0m"

def print_success(msg):
    print(f"{GREEN}✓{RESET} {msg}")

def print_error(msg):
    print(f"{RED}✗{RESET} {msg}")

def print_info(msg):
    print(f"{BLUE}ℹ{RESET} {msg}")

def print_warning(msg):
    print(f"{YELLOW}⚠{RESET} {msg}")

def print_section(title):
    print(f"\n{BLUE}{'='*60}{RESET}")
    print(f"{BLUE}{title:^60}{RESET}")
    print(f"{BLUE}{'='*60}{RESET}\n")

async def main():
    print_section("docrag - Setup Validation")

    errors = []
    warnings = []

    # 1. Python version check
    print_section("1. Python Environment")
    python_version = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    print_info(f"Python version: {python_version}")
    if sys.version_info >= (3, 10):
        print_success("Python version >= 3.10")
    else:
        print_error("Python version < 3.10 (required)")
        errors.append("Python version too old")

    in_venv = hasattr(sys, 'real_prefix') or (hasattr(sys, 'base_prefix') and sys.base_prefix != sys.prefix)
    if in_venv:
        print_success("Running in virtual environment")
    else:
        print_warning("Not running in virtual environment (recommended)")
        warnings.append("Not in venv")

    # 2. Import core dependencies
    print_section("2. Core Dependencies")

    dependencies = [
        ("httpx", "HTTP client"),
        ("numpy", "Vector math"),
        ("pydantic", "Response models"),
        ("yaml", "Frontmatter parsing"),
        ("structlog", "Structured logging"),
        ("pytest", "Testing framework"),
    ]

    for module_name, description in dependencies:
        try:
            __import__(module_name)
            print_success(f"{description:30} ({module_name})")
        except ImportError as e:
            print_error(f"{description:30} ({module_name}) - {e}")
            errors.append(f"Missing: {module_name}")

    # 3. Configuration
    print_section("3. Configuration")

    try:
        sys.path.insert(0, str(Path(__file__).parent.parent))
        from docrag.config import Settings, NOTES_DIR
        from docrag.errors import ProviderUnavailable
        from docrag.llm_client import OllamaClient
        from docrag.rag.embeddings import EmbeddingClient

        settings = Settings.from_env()

        print_success("Config loaded successfully")
        print_info(f"  Chat model: {settings.generation.model}")
        print_info(f"  Embedding model: {settings.embedding.model}")
        print_info(f"  Ollama URL: {settings.embedding.base_url}")
        print_info(f"  Chunking: {settings.chunking.strategy}, {settings.chunking.max_chunk_size} chars")
        print_info(f"  Database: {settings.storage.db_path}")

        if NOTES_DIR.exists():
            print_success(f"Notes directory exists: {NOTES_DIR}")
        else:
            print_warning(f"Notes directory missing: {NOTES_DIR}")
            warnings.append("Notes directory missing")

    except Exception as e:
        print_error(f"Failed to load config: {e}")
        errors.append("Config loading failed")
        return errors, warnings

    # 4. Ollama service and models
    print_section("4. Ollama Service")

    embedder = EmbeddingClient(settings.embedding)
    try:
        if await embedder.health_check():
            print_success(f"Embedding model available: {settings.embedding.model}")
        else:
            print_error(f"Embedding model missing: {settings.embedding.model}")
            print_info(f"  Run: ollama pull {settings.embedding.model}")
            errors.append(f"Missing embedding model: {settings.embedding.model}")

        models = await OllamaClient(base_url=settings.generation.base_url).list_models()
        print_success(f"Ollama service running at {settings.generation.base_url}")
        if settings.generation.model in models:
            print_success(f"Chat model available: {settings.generation.model}")
        else:
            print_error(f"Chat model missing: {settings.generation.model}")
            print_info(f"  Run: ollama pull {settings.generation.model}")
            errors.append(f"Missing chat model: {settings.generation.model}")

    except ProviderUnavailable as e:
        print_error(f"Cannot connect to Ollama service: {e}")
        print_info("  Make sure Ollama is running: ollama serve")
        errors.append("Ollama not running")
        return errors, warnings

    # 5. Embedding round trip
    print_section("5. Embedding API Test")

    try:
        vector = await embedder.embed_one("test")
        print_success(f"Embedding API working (dimension: {len(vector)})")
    except Exception as e:
        print_error(f"Embedding API test failed: {e}")
        errors.append(f"API test failed: {e}")

    return errors, warnings


def report(errors, warnings):
    print_section("Summary")

    if not errors:
        print_success("All checks passed! ✨")
        print_info("  Next step: python scripts/reindex.py")
    else:
        print_error(f"Found {len(errors)} error(s):")
        for i, error in enumerate(errors, 1):
            print(f"  {i}. {error}")

    if warnings:
        print_warning(f"\nFound {len(warnings)} warning(s):")
        for i, warning in enumerate(warnings, 1):
            print(f"  {i}. {warning}")

    print()

if __name__ == "__main__":
    errors, warnings = asyncio.run(main())
    report(errors, warnings)
    sys.exit(1 if errors else 0)
