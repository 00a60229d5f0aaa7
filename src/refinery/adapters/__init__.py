"""Source control adapters for refinery."""

from __future__ import annotations

from refinery.adapters.base import AdapterKind, SourceControlAdapter, WorkerMode
from refinery.adapters.git import GitAdapter
from refinery.config import AdapterConfig
from refinery.errors import ConfigError


def create_adapter(config: AdapterConfig, rig_path: str = "") -> SourceControlAdapter:
	"""Build the adapter named by config.type."""
	try:
		kind = AdapterKind(config.type)
	except ValueError:
		raise ConfigError(f"unknown adapter: {config.type!r}") from None
	if kind is AdapterKind.GIT:
		return GitAdapter(config, rig_path=rig_path)
	raise ConfigError(f"unsupported adapter: {kind.value!r}")


__all__ = [
	"AdapterKind",
	"GitAdapter",
	"SourceControlAdapter",
	"WorkerMode",
	"create_adapter",
]
