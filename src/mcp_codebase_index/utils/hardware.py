"""Hardware detection used to auto-tune indexing concurrency."""

import multiprocessing
import os
import platform
from typing import Any

import psutil
from loguru import logger


def recommend_concurrency(cpu_cores: int) -> tuple[int, int]:
    """Recommend (embedding calls in flight, file batches in flight).

    More parallelism on higher core counts, conservative on small machines.
    """
    if cpu_cores >= 8:
        return 8, 4
    if cpu_cores >= 4:
        return 4, 2
    return 2, 1


def detect_hardware_config() -> dict[str, Any]:
    """Detect hardware configuration for concurrency settings.

    Returns:
        Dictionary with hardware information:
        - cpu_cores: Number of logical CPU cores
        - cpu_arch: CPU architecture (arm, x86_64, etc.)
        - system: Operating system (Darwin, Linux, Windows)
        - ram_gb: Total RAM in GB
        - available_ram_gb: Currently available RAM in GB
        - max_concurrent_embedding_requests: Recommended embedding calls in flight
        - max_concurrent_file_batches: Recommended file batches in flight
        - max_concurrent_libraries: Recommended libraries indexing at once
    """
    cpu_cores = multiprocessing.cpu_count()
    config: dict[str, Any] = {
        "cpu_cores": cpu_cores,
        "cpu_arch": platform.processor() or platform.machine(),
        "system": platform.system(),
        "ram_gb": 0.0,
        "available_ram_gb": 0.0,
    }

    try:
        memory = psutil.virtual_memory()
        config["ram_gb"] = memory.total / (1024**3)
        config["available_ram_gb"] = memory.available / (1024**3)
    except Exception as e:
        logger.debug(f"Could not read memory info: {e}")

    embedding_requests, file_batches = recommend_concurrency(cpu_cores)
    config["max_concurrent_embedding_requests"] = embedding_requests
    config["max_concurrent_file_batches"] = file_batches

    # Each indexing library holds its own batch pool; keep them few on small hosts
    if config["ram_gb"] and config["ram_gb"] < 4:
        config["max_concurrent_libraries"] = 1
    else:
        config["max_concurrent_libraries"] = max(1, min(4, cpu_cores // 4))

    return config


def log_hardware_config() -> None:
    """Log detected hardware configuration at startup."""
    config = detect_hardware_config()

    logger.info("=" * 70)
    logger.info("Hardware Configuration Detected:")
    logger.info("-" * 70)
    logger.info(f"System:            {config['system']}")
    logger.info(f"CPU Architecture:  {config['cpu_arch']}")
    logger.info(f"CPU Cores:         {config['cpu_cores']}")
    logger.info(f"Total RAM:         {config['ram_gb']:.1f} GB")
    logger.info("-" * 70)
    logger.info("Recommended Concurrency:")
    logger.info(f"  Embedding Calls:   {config['max_concurrent_embedding_requests']}")
    logger.info(f"  File Batches:      {config['max_concurrent_file_batches']}")
    logger.info(f"  Libraries:         {config['max_concurrent_libraries']}")
    logger.info("-" * 70)

    overrides = [
        f"{name.removeprefix('MCP_CODEBASE_INDEX_')}={os.environ[name]}"
        for name in (
            "MCP_CODEBASE_INDEX_MAX_CONCURRENT",
            "MCP_CODEBASE_INDEX_FILE_BATCHES",
            "MCP_CODEBASE_INDEX_BATCH_SIZE",
        )
        if os.environ.get(name)
    ]
    if overrides:
        logger.info("Environment Overrides:")
        for override in overrides:
            logger.info(f"  {override}")
        logger.info("-" * 70)

    logger.info("=" * 70)
