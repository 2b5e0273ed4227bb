import os
import tomllib
from collections.abc import Mapping
from decimal import Decimal
from pathlib import Path
from typing import Annotated, Any

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeFloat,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    field_validator,
)

from txload import constants as C
from txload.constants import Network
from txload.errors import ConfigValidation

# field -> environment variable
ENV_VARS = {
    "private_key": "PRIVATE_KEY",
    "rpc_url": "RPC_URL",
    "network": "LEDGER_NETWORK",
    "num_wallets": "NUM_WALLETS",
    "transactions_per_wallet": "TRANSACTIONS_PER_WALLET",
    "interval_ms": "TRANSACTION_INTERVAL_MS",
    "gas_limit": "GAS_LIMIT",
    "gas_price": "GAS_PRICE",
    "transaction_amount": "TRANSACTION_AMOUNT",
    "settle_seconds": "SETTLE_SECONDS",
    "receipt_timeout": "RECEIPT_TIMEOUT",
    "probe_retries": "PROBE_RETRIES",
}

UNSET = {"", "auto", "none"}

PositiveDecimal = Annotated[Decimal, Field(gt=0)]


class LoadTestConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    private_key: str = Field(min_length=1, repr=False)
    rpc_url: str = Field(min_length=1)
    network: Network = Network.EVM

    num_wallets: PositiveInt = 10
    transactions_per_wallet: PositiveInt = 100
    interval_ms: NonNegativeInt = 1000

    gas_limit: PositiveInt = 21000
    gas_price: PositiveDecimal | None = None  # gwei, None -> node price
    transaction_amount: PositiveDecimal = C.DEFAULT_TRANSACTION_AMOUNT

    settle_seconds: NonNegativeFloat = C.SETTLE_SECONDS
    receipt_timeout: PositiveFloat | None = C.RECEIPT_TIMEOUT
    probe_retries: PositiveInt = 3

    @field_validator("gas_price", "receipt_timeout", mode="before")
    @classmethod
    def _optional(cls, v: Any) -> Any:
        if isinstance(v, str) and v.strip().lower() in UNSET:
            return None
        return v

    @field_validator("private_key", "rpc_url", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


def _format_errors(e: ValidationError) -> str:
    lines = ["Configuration validation failed:"]
    for err in e.errors():
        field = ".".join(str(p) for p in err["loc"]) or "config"
        var = ENV_VARS.get(field)
        name = f"{var} ({field})" if var else field
        lines.append(f"- {name}: {err['msg']}")
    return "\n".join(lines)


def _read_toml(path: Path) -> dict:
    try:
        raw = tomllib.loads(path.read_text())
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigValidation(f"Configuration validation failed:\n- {path}: {e}") from e
    return dict(raw.get("txload", raw))


def load_config(
    path: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    env_file: str | Path | None = ".env",
    overrides: Mapping[str, Any] | None = None,
) -> LoadTestConfig:
    """Merge defaults, TOML file, .env, environment and CLI overrides, then validate.

    Raises ConfigValidation with every problem listed; nothing here touches the network.
    """
    data: dict[str, Any] = {}
    if path is not None:
        data.update(_read_toml(Path(path)))

    env_values: dict[str, str | None] = {}
    if env_file is not None and Path(env_file).is_file():
        env_values.update(dotenv_values(env_file))
    env_values.update(os.environ if env is None else env)

    for field, var in ENV_VARS.items():
        value = env_values.get(var)
        if value is not None and value != "":
            data[field] = value

    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return LoadTestConfig(**data)
    except ValidationError as e:
        raise ConfigValidation(_format_errors(e)) from e
