#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Settings - Centralized configuration for the batch rendering engine
"""

import os
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings


# Base directory
BASE_DIR = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Application settings"""

    # ========== Surface Pool ==========
    pool_max_size: int = 4  # Max concurrently leased render surfaces
    batch_concurrency: int = 4  # Default work items in flight per batch

    # ========== Timeouts (seconds) ==========
    acquire_timeout: float = 30.0  # Wait for a free surface
    render_timeout: float = 60.0  # Wait for the harness "render complete" signal
    harness_load_timeout: float = 120.0  # First template load on a surface
    surface_create_timeout: float = 120.0  # Browser launch + new page
    write_timeout: float = 30.0  # Document write to storage
    shutdown_drain_timeout: float = 10.0  # Wait for in-flight leases on shutdown

    # ========== Retry Policy ==========
    retry_attempts: int = 1  # Extra attempts after the first failure
    retry_backoff_seconds: float = 0.0  # 0 = retry immediately
    retry_surface_policy: str = "any"  # any | prefer_different

    # ========== Page Assembly ==========
    max_upscale: float = 2.0  # Source may be at most this much below target DPI
    allow_upscale: bool = False  # Warn instead of failing with ImageTooSmall
    pdf_author: str = "dm-render"

    # ========== Browser ==========
    browser_headless: bool = True
    browser_args: List[str] = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",  # Overcome limited /dev/shm in containers
        "--disable-gpu",
    ]
    browser_executable_path: Optional[str] = None
    device_scale_factor: float = 2.0  # High DPI capture
    fabric_js_url: str = "https://cdn.jsdelivr.net/npm/fabric@6.7.1/dist/index.min.js"

    # ========== Execution Mode ==========
    # Fallback mode: one engine + one surface per invocation (serverless)
    single_surface_mode: bool = False

    # ========== Storage ==========
    output_dir: Path = BASE_DIR / "data" / "batch-output"
    database_dir: Path = BASE_DIR / "data"
    zip_outputs: bool = False  # Also bundle per-recipient PDFs into a ZIP
    retained_batches: int = 100  # Finished batches kept in memory per orchestrator
    print_formats_file: Optional[Path] = None  # Extra formats (JSON)

    # ========== Webhooks ==========
    webhook_max_retries: int = 3
    webhook_timeout: float = 30.0

    # ========== Logging ==========
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    class Config:
        env_file = str(BASE_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        for dir_path in [self.output_dir, self.database_dir]:
            dir_path.mkdir(exist_ok=True, parents=True)

    @property
    def is_serverless(self) -> bool:
        """Detect constrained serverless execution (no pool survives invocations)."""
        return bool(os.getenv("VERCEL") or os.getenv("AWS_LAMBDA_FUNCTION_NAME"))

    @property
    def use_single_surface(self) -> bool:
        return self.single_surface_mode or self.is_serverless


settings = Settings()
