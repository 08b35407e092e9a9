"""
Expire signature requests that are past their expiry.
Run manually or from cron: python scripts/run_signature_sweep.py (from project root)
"""
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from signflow.database import Base, engine
from signflow.services.expiry_sweep import run_signature_expiry_job


def main():
    Base.metadata.create_all(bind=engine)
    count = run_signature_expiry_job()
    print(f"Expired {count} signature request(s).")


if __name__ == "__main__":
    main()
