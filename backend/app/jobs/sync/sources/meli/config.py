import os
from dataclasses import dataclass


@dataclass(frozen=True)
class MeliConfig:
    base_url: str

    connect_timeout: float
    read_timeout: float
    write_timeout: float
    pool_timeout: float

    retries: int
    backoff_base: float


def load_config() -> MeliConfig:
    return MeliConfig(
        base_url=os.getenv("MELI_BASE_URL", "https://api.mercadolibre.com"),
        connect_timeout=float(os.getenv("MELI_CONNECT_TIMEOUT_SECONDS", "10")),
        read_timeout=float(os.getenv("MELI_READ_TIMEOUT_SECONDS", "20")),
        write_timeout=float(os.getenv("MELI_WRITE_TIMEOUT_SECONDS", "10")),
        pool_timeout=float(os.getenv("MELI_POOL_TIMEOUT_SECONDS", "30")),
        retries=int(os.getenv("MELI_RETRIES", "3")),
        backoff_base=float(os.getenv("MELI_BACKOFF_BASE_SECONDS", "1.0")),
    )
