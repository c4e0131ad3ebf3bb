#!/usr/bin/env python3
"""
Expire every enrollment link whose expires_at has passed and push the new
status to the CRM.

Intended for an external scheduler (cron, Cloud Scheduler, ...):
    */15 * * * * cd /app && python scripts/expire_enrollments.py

The same sweep is available over HTTP as POST /admin/enrollments/expire-overdue.
"""
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from enrollpay.db.session import SessionLocal
from enrollpay.services.crm_sync import CRMSync
from enrollpay.services.enrollment_store import expire_overdue


def main():
    db = SessionLocal()
    try:
        expired = expire_overdue(db, crm=CRMSync())
        print(f"Expired {len(expired)} enrollment(s)")
        for enrollment in expired:
            print(f"  - {enrollment.id} ({enrollment.crm_module}/{enrollment.crm_record_id})")
    finally:
        db.close()


if __name__ == "__main__":
    main()
