from typing import Any, Dict, List, Optional

import pandas as pd
import pandera as pa
from eth_abi import decode as abi_decode
from eth_utils import keccak
from pandera import Check, Column

from stakerecon.models import ChainEvent, EntityKey, normalize_delegator_key


NODE_STAKE_UPDATED = "NodeStakeUpdated(uint72,uint96)"
DELEGATOR_BASE_STAKE_UPDATED = "DelegatorBaseStakeUpdated(uint72,bytes32,uint96)"


def event_topic(signature: str) -> str:
    return f"0x{keccak(text=signature).hex()}".lower()


NODE_TOPIC = event_topic(NODE_STAKE_UPDATED)
DELEGATOR_TOPIC = event_topic(DELEGATOR_BASE_STAKE_UPDATED)

EVENT_NAMES = {
    NODE_TOPIC: "NodeStakeUpdated",
    DELEGATOR_TOPIC: "DelegatorBaseStakeUpdated",
}

COLUMNS = ["block_number", "log_index", "tx_hash", "event_name", "identity_id", "delegator_key", "value"]

STAKE_LOG_SCHEMA = pa.DataFrameSchema(
    {
        "block_number": Column(int, Check.ge(0)),
        "log_index": Column(int, Check.ge(0)),
        "tx_hash": Column(str, Check.str_matches(r"^0x[a-fA-F0-9]{64}$")),
        "event_name": Column(str, Check.isin(list(EVENT_NAMES.values()))),
        "identity_id": Column(int, Check.ge(0)),
        "delegator_key": Column(str, Check.str_matches(r"^0x[a-f0-9]{64}$"), nullable=True),
        # uint96 does not fit int64, keep the decimal string
        "value": Column(str, Check.str_matches(r"^[0-9]+$")),
    }
)


def _int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.startswith("0x"):
        return int(value, 16)
    return int(value)


def _decode_uint96(data: str) -> int:
    raw = bytes.fromhex(data[2:] if data.startswith("0x") else data)
    (value,) = abi_decode(["uint96"], raw)
    return value


def _row(log: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    topics = [t.lower() for t in log.get("topics", [])]
    if not topics or topics[0] not in EVENT_NAMES or log.get("removed"):
        return None
    is_delegator = topics[0] == DELEGATOR_TOPIC
    return {
        "block_number": _int(log["blockNumber"]),
        "log_index": _int(log.get("logIndex", 0)),
        "tx_hash": log["transactionHash"],
        "event_name": EVENT_NAMES[topics[0]],
        "identity_id": int(topics[1], 16),
        "delegator_key": normalize_delegator_key(topics[2]) if is_delegator else None,
        "value": str(_decode_uint96(log.get("data", "0x"))),
    }


def normalize_stake_logs(logs: List[Dict[str, Any]]) -> pd.DataFrame:
    rows = [row for row in (_row(log) for log in logs) if row is not None]
    if not rows:
        return pd.DataFrame(columns=COLUMNS)
    df = pd.DataFrame(rows, columns=COLUMNS)
    df = df.drop_duplicates(subset=["tx_hash", "log_index"])
    return STAKE_LOG_SCHEMA.validate(df)


def frame_to_events(df: pd.DataFrame) -> List[ChainEvent]:
    events = []
    for row in df.itertuples(index=False):
        delegator_key = row.delegator_key if isinstance(row.delegator_key, str) else None
        events.append(
            ChainEvent(
                key=EntityKey(int(row.identity_id), delegator_key),
                block_number=int(row.block_number),
                value=int(row.value),
            )
        )
    return events


def decode_stake_logs(logs: List[Dict[str, Any]]) -> List[ChainEvent]:
    return frame_to_events(normalize_stake_logs(logs))
