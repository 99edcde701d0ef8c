"""
Setup verification script for the StudySpace backend.
Checks dependencies, the database, the local model server and the OpenAI key.
"""
import asyncio
import sys
import os
from typing import List, Tuple

# Color codes for terminal output
GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
BLUE = "\033[94m"
RESET = "\033[0m"


def print_status(message: str, status: bool):
    """Print colored status message."""
    symbol = f"{GREEN}✓{RESET}" if status else f"{RED}✗{RESET}"
    print(f"{symbol} {message}")


def print_warning(message: str):
    print(f"{YELLOW}⚠{RESET} {message}")


async def check_python_version() -> bool:
    """Check Python version is 3.11+."""
    version = sys.version_info
    if version.major == 3 and version.minor >= 11:
        print_status(f"Python version: {version.major}.{version.minor}.{version.micro}", True)
        return True
    else:
        print_status(f"Python version {version.major}.{version.minor} (requires 3.11+)", False)
        return False


async def check_dependencies() -> bool:
    """Check if required packages are installed."""
    required_packages = [
        "fastapi",
        "uvicorn",
        "sqlalchemy",
        "asyncpg",
        "httpx",
        "pydantic",
        "pydantic_settings",
    ]

    all_installed = True
    for package in required_packages:
        try:
            __import__(package)
            print_status(f"Package '{package}' installed", True)
        except ImportError:
            print_status(f"Package '{package}' missing", False)
            all_installed = False

    return all_installed


async def check_env_file() -> bool:
    """Check if .env file exists."""
    if os.path.exists(".env"):
        print_status(".env file exists", True)
        return True
    else:
        print_status(".env file missing (defaults will be used)", False)
        return False


async def check_database() -> bool:
    """Connect with the configured DATABASE_URL and create the tables."""
    from sqlalchemy import text

    from studyspace.config import settings
    from studyspace.database import close_db, engine, init_db

    try:
        await init_db()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        print_status(f"Database reachable ({settings.DATABASE_URL.split('@')[-1]})", True)
        return True
    except Exception as e:
        print_status(f"Database connection failed: {str(e)}", False)
        print(f"  {YELLOW}Check DATABASE_URL or run: docker-compose up -d{RESET}")
        return False
    finally:
        await close_db()


async def check_ollama() -> bool:
    """Check that Ollama is running and the configured model is pulled."""
    from studyspace.config import settings
    from studyspace.services.ollama_backend import OllamaBackend

    model = settings.OLLAMA_LLM_MODEL
    if await OllamaBackend().check_health():
        print_status(f"Ollama running with model '{model}'", True)
        return True

    print_status(f"Ollama unreachable or model '{model}' missing", False)
    print(f"  {YELLOW}Start it with: ollama serve && ollama pull {model}{RESET}")
    print(f"  {YELLOW}Install from: https://ollama.ai/{RESET}")
    return False


async def check_openai_key() -> bool:
    """Validate OPENAI_API_KEY if one is configured.  A missing key is not an error."""
    from studyspace.config import settings
    from studyspace.services.errors import GenerationError
    from studyspace.services.openai_backend import OpenAIBackend

    key = (settings.OPENAI_API_KEY or "").strip()
    if not key:
        print_warning("OPENAI_API_KEY not set; spaces preferring OpenAI will use the local model")
        return True

    try:
        result = await OpenAIBackend(key_provider=lambda: key).validate_key(key)
    except GenerationError as e:
        print_warning(f"Could not validate the OpenAI key: {e.message}")
        return True

    print_status(
        "OpenAI key accepted" if result.valid else f"OpenAI key rejected: {result.message}",
        result.valid,
    )
    return result.valid


async def main():
    """Run all verification checks."""
    print(f"\n{BLUE}{'='*60}{RESET}")
    print(f"{BLUE}StudySpace Backend - Setup Verification{RESET}")
    print(f"{BLUE}{'='*60}{RESET}\n")

    checks: List[Tuple[str, callable]] = [
        ("Python Version", check_python_version),
        ("Dependencies", check_dependencies),
        ("Environment File", check_env_file),
        ("Database", check_database),
        ("Ollama + Model", check_ollama),
        ("OpenAI Key", check_openai_key),
    ]

    results = []

    for check_name, check_func in checks:
        print(f"\n{BLUE}Checking {check_name}...{RESET}")
        try:
            result = await check_func()
            results.append(result)
        except Exception as e:
            print_status(f"Error during check: {str(e)}", False)
            results.append(False)

    # Summary
    print(f"\n{BLUE}{'='*60}{RESET}")
    passed = sum(results)
    total = len(results)

    if passed == total:
        print(f"{GREEN}✓ All checks passed! ({passed}/{total}){RESET}")
        print(f"\n{GREEN}You're ready to run the backend:{RESET}")
        print(f"  python -m studyspace.main")
        print(f"  or")
        print(f"  uvicorn studyspace.main:app --reload")
    else:
        print(f"{RED}✗ Some checks failed ({passed}/{total} passed){RESET}")
        print(f"\n{YELLOW}Please fix the issues above before running the backend.{RESET}")
        sys.exit(1)

    print(f"{BLUE}{'='*60}{RESET}\n")


if __name__ == "__main__":
    asyncio.run(main())
