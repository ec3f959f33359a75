from importlib import import_module

__all__ = [
    "population_orchestrator",
    "PopulationOrchestrator",
    "RpcGateway",
    "CacheStateTracker",
    "create_cache_store",
]

_LAZY_EXPORTS = {
    "population_orchestrator": ("services.population", "population_orchestrator"),
    "PopulationOrchestrator": ("services.population", "PopulationOrchestrator"),
    "RpcGateway": ("services.rpc_client", "RpcGateway"),
    "CacheStateTracker": ("services.cache_state", "CacheStateTracker"),
    "create_cache_store": ("services.cache_store", "create_cache_store"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
