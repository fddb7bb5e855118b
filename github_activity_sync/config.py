"""
Configuration Module

This module contains configuration settings for the sync service.
"""

import os
from pathlib import Path

# Load environment variables from .env file
from dotenv import load_dotenv

# Base directory - one level up from this file
BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")

# Local data storage
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
DATA_DIR.mkdir(exist_ok=True, parents=True)

# Database settings - SQLite by default, any SQLAlchemy URL is accepted
DATABASE_PATH = DATA_DIR / "github_activity.db"
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATABASE_PATH}")

# GitHub API settings
GITHUB_GRAPHQL_URL = os.getenv("GITHUB_GRAPHQL_URL", "https://api.github.com/graphql")
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")  # Personal Access Token for GitHub API
GITHUB_ORG = os.getenv("GITHUB_ORG", "")
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))

# Collection settings
PAGE_SIZE = int(os.getenv("PAGE_SIZE", "50"))  # 100 is the max for GitHub GraphQL
SYNC_INTERVAL_MINUTES = int(os.getenv("SYNC_INTERVAL_MINUTES", "60"))

# Retry / rate limit settings
MAX_RETRY_ATTEMPTS = int(os.getenv("MAX_RETRY_ATTEMPTS", "3"))
MAX_RATE_LIMIT_RETRIES = int(os.getenv("MAX_RATE_LIMIT_RETRIES", "10"))
BASE_RETRY_DELAY_SECONDS = float(os.getenv("BASE_RETRY_DELAY_SECONDS", "0.5"))
RATE_LIMIT_DEFAULT_BACKOFF_SECONDS = float(
    os.getenv("RATE_LIMIT_DEFAULT_BACKOFF_SECONDS", "60")
)
RATE_LIMIT_WAIT_CEILING_SECONDS = float(
    os.getenv("RATE_LIMIT_WAIT_CEILING_SECONDS", "900")
)

# Repository realignment settings
REALIGN_LIMIT = int(os.getenv("REALIGN_LIMIT", "500"))
REALIGN_CHUNK_SIZE = int(os.getenv("REALIGN_CHUNK_SIZE", "25"))
REALIGN_RATE_LIMIT_FLOOR = int(os.getenv("REALIGN_RATE_LIMIT_FLOOR", "200"))
REALIGN_WAIT_TIMEOUT_SECONDS = float(os.getenv("REALIGN_WAIT_TIMEOUT_SECONDS", "300"))
OWNERSHIP_RECHECK_DAYS = int(os.getenv("OWNERSHIP_RECHECK_DAYS", "7"))
MAX_REDIRECT_HOPS = int(os.getenv("MAX_REDIRECT_HOPS", "5"))

# API settings
API_PREFIX = "/api"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
