"""
Core configuration for the research pipeline

All tunable knobs (provider credentials, model names, credit costs, research
limits, polling cadence) live in a single ``PipelineConfig`` object that is
built once from the environment and injected into the orchestrator. No other
module reads process environment directly.
"""

from __future__ import annotations

import os
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


# ────────────────────────────────────────────────────────────
#  Env helpers
# ────────────────────────────────────────────────────────────
def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


# ────────────────────────────────────────────────────────────
#  Settings models
# ────────────────────────────────────────────────────────────
class CompletionProviderSettings(BaseModel):
    """One OpenAI-compatible completion backend."""

    name: str
    api_key: str
    model: str
    base_url: Optional[str] = None
    timeout_seconds: float = 120.0


class PhaseCosts(BaseModel):
    """Credits charged per pipeline phase."""

    interpret: int = 1
    reasoning: int = 2
    research: int = 3
    research_deep: int = 10
    structuring: int = 2
    synthesis: int = 3
    clarification: int = 1

    def total(self, deep_mode: bool, with_research: bool = True) -> int:
        research = (self.research_deep if deep_mode else self.research) if with_research else 0
        return self.interpret + self.reasoning + research + self.structuring + self.synthesis


class BudgetProfile(BaseModel):
    """Credit envelope for a polled long-running agent."""

    name: str
    base_cost: int
    max_budget: int
    credits_per_tool_calls: int = Field(5, description="Tool calls that accrue one credit")


DEFAULT_BUDGET_PROFILES: Dict[str, BudgetProfile] = {
    "agent-standard": BudgetProfile(name="agent-standard", base_cost=15, max_budget=40),
    "agent-light": BudgetProfile(name="agent-light", base_cost=8, max_budget=25),
}


class PipelineConfig(BaseModel):
    """Explicit configuration injected into the orchestrator at construction."""

    # Completion providers, in fallback order
    completion_providers: List[CompletionProviderSettings] = Field(default_factory=list)

    # Research providers
    perplexity_api_key: str = ""
    perplexity_base_url: str = "https://api.perplexity.ai"
    perplexity_model: str = "sonar-pro"
    firecrawl_api_key: str = ""
    firecrawl_base_url: str = "https://api.firecrawl.dev/v1"
    research_timeout_seconds: float = 30.0

    # Polled agent provider
    agent_api_key: str = ""
    agent_base_url: str = ""
    poll_interval_seconds: float = 3.0
    max_stall_count: int = 10
    default_budget_profile: str = "agent-light"
    budget_profiles: Dict[str, BudgetProfile] = Field(
        default_factory=lambda: dict(DEFAULT_BUDGET_PROFILES)
    )

    # Research limits
    max_sources: int = 20
    max_sources_deep: int = 50
    deep_fetch_count: int = 3
    # Web domains every research search is restricted to; empty means unrestricted
    research_domain_filter: List[str] = Field(default_factory=list)
    research_concurrency: int = 4

    # Context shaping
    structuring_sources_per_question: int = 5
    structuring_snippet_chars: int = 200
    synthesis_urls_per_question: int = 3
    final_sources_per_question: int = 5

    # Classification
    ambiguity_threshold: float = 0.7

    # Input
    max_input_length: int = 5000

    costs: PhaseCosts = Field(default_factory=PhaseCosts)
    # Starting balance for the process-local ledger used by the HTTP app
    initial_credit_balance: int = 0

    # Logging
    log_level: str = "INFO"
    log_pretty: bool = False

    # HTTP server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    environment: str = "development"

    def budget_profile(self, name: Optional[str] = None) -> BudgetProfile:
        key = name or self.default_budget_profile
        return self.budget_profiles.get(key) or self.budget_profiles[self.default_budget_profile]

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "PipelineConfig":
        """Build configuration from process environment (and ``.env`` when present)."""
        if dotenv:
            load_dotenv()

        providers: List[CompletionProviderSettings] = []
        timeout = _env_float("LLM_TIMEOUT_SECONDS", 120.0)
        primary_key = _env_str("OPENAI_API_KEY")
        if primary_key:
            providers.append(
                CompletionProviderSettings(
                    name=_env_str("PRIMARY_LLM_NAME", "primary"),
                    api_key=primary_key,
                    model=_env_str("OPENAI_MODEL", "gpt-4o-mini"),
                    base_url=_env_str("OPENAI_BASE_URL") or None,
                    timeout_seconds=timeout,
                )
            )
        fallback_key = _env_str("FALLBACK_LLM_API_KEY")
        if fallback_key:
            providers.append(
                CompletionProviderSettings(
                    name=_env_str("FALLBACK_LLM_NAME", "fallback"),
                    api_key=fallback_key,
                    model=_env_str("FALLBACK_LLM_MODEL", "gpt-4o-mini"),
                    base_url=_env_str("FALLBACK_LLM_BASE_URL") or None,
                    timeout_seconds=timeout,
                )
            )

        costs = PhaseCosts(
            interpret=_env_int("CREDITS_INTERPRET", 1),
            reasoning=_env_int("CREDITS_REASONING", 2),
            research=_env_int("CREDITS_RESEARCH", 3),
            research_deep=_env_int("CREDITS_RESEARCH_DEEP", 10),
            structuring=_env_int("CREDITS_STRUCTURING", 2),
            synthesis=_env_int("CREDITS_SYNTHESIS", 3),
            clarification=_env_int("CREDITS_CLARIFICATION", 1),
        )

        return cls(
            completion_providers=providers,
            perplexity_api_key=_env_str("PERPLEXITY_API_KEY"),
            perplexity_base_url=_env_str("PERPLEXITY_BASE_URL", "https://api.perplexity.ai").rstrip("/"),
            perplexity_model=_env_str("PERPLEXITY_MODEL", "sonar-pro"),
            firecrawl_api_key=_env_str("FIRECRAWL_API_KEY"),
            firecrawl_base_url=_env_str("FIRECRAWL_BASE_URL", "https://api.firecrawl.dev/v1").rstrip("/"),
            research_timeout_seconds=_env_float("RESEARCH_TIMEOUT_SECONDS", 30.0),
            agent_api_key=_env_str("AGENT_API_KEY"),
            agent_base_url=_env_str("AGENT_BASE_URL").rstrip("/"),
            poll_interval_seconds=_env_float("AGENT_POLL_INTERVAL", 3.0),
            max_stall_count=_env_int("AGENT_MAX_STALL_COUNT", 10),
            default_budget_profile=_env_str("AGENT_BUDGET_PROFILE", "agent-light"),
            max_sources=_env_int("RESEARCH_MAX_SOURCES", 20),
            max_sources_deep=_env_int("RESEARCH_MAX_SOURCES_DEEP", 50),
            deep_fetch_count=_env_int("RESEARCH_DEEP_FETCH_COUNT", 3),
            research_domain_filter=[d.strip() for d in _env_str("RESEARCH_DOMAIN_FILTER").split(",") if d.strip()],
            research_concurrency=max(1, _env_int("RESEARCH_CONCURRENCY", 4)),
            ambiguity_threshold=_env_float("AMBIGUITY_THRESHOLD", 0.7),
            max_input_length=_env_int("MAX_INPUT_LENGTH", 5000),
            costs=costs,
            initial_credit_balance=_env_int("INITIAL_CREDIT_BALANCE", 0),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            log_pretty=_env_str("LOG_PRETTY", "0").lower() in {"1", "true", "yes"},
            api_host=_env_str("API_HOST", "0.0.0.0"),
            api_port=_env_int("API_PORT", 8000),
            environment=_env_str("ENVIRONMENT", "development").lower(),
        )


__all__ = [
    "BudgetProfile",
    "CompletionProviderSettings",
    "DEFAULT_BUDGET_PROFILES",
    "PhaseCosts",
    "PipelineConfig",
]
