# run_engine.py

import json
import sys
from pathlib import Path

from hl7_engine.config import configure_logging
from hl7_engine.db import get_engine, init_db, make_session_factory
from hl7_engine.inbound import receive_message_sync
from hl7_engine.queue import get_queue_statistics, prune_processed_messages


def main() -> None:
    if len(sys.argv) < 3:
        print("Usage: python run_engine.py path/to/message.hl7 TENANT_ID")
        sys.exit(1)

    hl7_path = Path(sys.argv[1])
    tenant_id = sys.argv[2]

    if not hl7_path.exists():
        print(f"File not found: {hl7_path}")
        sys.exit(1)

    configure_logging()

    # files saved on Windows often use CRLF; segments split on CR/LF either way
    hl7_text = hl7_path.read_text(encoding="utf-8")

    engine = get_engine()
    init_db(engine)
    SessionLocal = make_session_factory(engine)

    with SessionLocal() as db:
        pruned = prune_processed_messages(db, tenant_id)
        if pruned:
            print(f"Pruned {pruned} old processed messages")

        print("Processing HL7 message...")
        result = receive_message_sync(db, hl7_text, tenant_id)

        print("\n=== Result ===")
        payload = {k: v for k, v in result.model_dump().items() if k != "ack"}
        print(json.dumps(payload, indent=2, default=str))

        print("\n=== ACK ===")
        print(result.ack.replace("\r", "\n"))

        print("\n=== Queue ===")
        print(json.dumps(get_queue_statistics(db, tenant_id).as_dict(), indent=2))

    sys.exit(0 if result.success else 2)


if __name__ == "__main__":
    main()
