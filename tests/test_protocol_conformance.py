"""Verify concrete classes conform to Protocol interfaces."""

from pathlib import Path

from colony.gateway import MockGateway, ModelGateway, RoutingGateway, ToolGateway
from colony.learning import Critic, HeuristicCritic, ModelCritic
from colony.memory import CosineIndex, HashingEmbedder, InMemoryBackend, SQLiteBackend
from colony.protocols import (
    Embedder,
    Gateway,
    IntelligenceProvider,
    MemoryBackend,
    SimilarityIndex,
)
from colony.router import Decomposer, ModelDecomposer, RuleDecomposer


class _EchoProvider:
    def generate(self, prompt: str, system: str | None = None) -> str:
        return prompt


class TestGatewayConformance:
    def test_mock_gateway(self):
        assert issubclass(MockGateway, Gateway)

    def test_tool_gateway(self):
        assert issubclass(ToolGateway, Gateway)

    def test_model_gateway(self):
        assert issubclass(ModelGateway, Gateway)

    def test_routing_gateway(self):
        assert issubclass(RoutingGateway, Gateway)


class TestIntelligenceProviderConformance:
    def test_echo_provider(self):
        assert isinstance(_EchoProvider(), IntelligenceProvider)


class TestMemoryBackendConformance:
    def test_in_memory_backend(self):
        assert issubclass(InMemoryBackend, MemoryBackend)

    def test_sqlite_backend(self, tmp_path: Path):
        backend = SQLiteBackend(tmp_path / "conformance.db")
        try:
            assert isinstance(backend, MemoryBackend)
        finally:
            backend.close()


class TestSimilarityConformance:
    def test_hashing_embedder(self):
        assert isinstance(HashingEmbedder(64), Embedder)

    def test_cosine_index(self):
        assert issubclass(CosineIndex, SimilarityIndex)


class TestPluggablePolicies:
    def test_critics(self):
        assert issubclass(HeuristicCritic, Critic)
        assert issubclass(ModelCritic, Critic)

    def test_decomposers(self):
        assert issubclass(RuleDecomposer, Decomposer)
        assert issubclass(ModelDecomposer, Decomposer)
