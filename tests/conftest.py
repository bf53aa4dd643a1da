from pathlib import Path

import pytest

from deepresearch.config import ResearchSettings
from deepresearch.orchestrator import Orchestrator
from tests.fakes import FakeGenerator, FakeSearch


def make_settings(tmp_path: Path, **overrides) -> ResearchSettings:
    settings = ResearchSettings(
        cache_path=str(tmp_path / "cache"),
        retry_attempts=2,
        retry_wait_s=0.0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def settings(tmp_path: Path) -> ResearchSettings:
    return make_settings(tmp_path)


@pytest.fixture
def orchestrator_factory(tmp_path: Path):
    def _factory(
        question: str = "How do maintainers handle flaky CI?",
        *,
        fake_generator: FakeGenerator | None = None,
        fake_search: FakeSearch | None = None,
        **settings_overrides,
    ):
        generator = fake_generator or FakeGenerator()
        search = fake_search or FakeSearch()
        orchestrator = Orchestrator(
            question,
            settings=make_settings(tmp_path, **settings_overrides),
            generate=generator,
            search=search,
        )
        return orchestrator, generator, search

    return _factory
