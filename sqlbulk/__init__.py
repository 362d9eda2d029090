from dataclasses import dataclass


@dataclass
class EngineConfig:
    connection_string: str
    max_bound_params: int = 999
