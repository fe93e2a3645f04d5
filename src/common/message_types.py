import json
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone


@dataclass
class ProcessingJobMessage:
    job_id: str
    source_key: str
    attempt: int = 1
    enqueued_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def encode(self) -> bytes:
        return json.dumps(asdict(self)).encode()

    @classmethod
    def decode(cls, raw: bytes) -> "ProcessingJobMessage":
        return cls(**json.loads(raw.decode("utf-8")))
