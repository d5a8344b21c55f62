"""Collaborators the phase runner drives: git, secrets, cache, tests."""

from ci_pipeline.services.blocklist import BlocklistService
from ci_pipeline.services.cache import CacheStore, LocalCacheStore, cache_key
from ci_pipeline.services.coverage import CoverageService
from ci_pipeline.services.git import DiffManager, GitManager
from ci_pipeline.services.parser import ParserService
from ci_pipeline.services.secrets import SecretStore
from ci_pipeline.services.testing import (
    ExecutionResult,
    TestDiscoveryService,
    TestExecutionService,
    TestOutcome,
)

__all__ = [
    "BlocklistService",
    "CacheStore",
    "CoverageService",
    "DiffManager",
    "ExecutionResult",
    "GitManager",
    "LocalCacheStore",
    "ParserService",
    "SecretStore",
    "TestDiscoveryService",
    "TestExecutionService",
    "TestOutcome",
    "cache_key",
]
