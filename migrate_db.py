"""
Database Migration Script

Creates the scheduled_jobs table used by the supervisor and its workers.
"""
import sys
from sqlmodel import SQLModel, create_engine
from scheduler.models import ScheduledJob, get_db_url


def migrate():
    """Run database migration."""
    print("=" * 60)
    print("Database Migration - Job Supervisor")
    print("=" * 60)

    db_url = get_db_url()
    print(f"\nDatabase URL: {db_url}")
    print("\nThis will create the following tables if missing:")
    print(f"  - {ScheduledJob.__tablename__}")

    if "--force" not in sys.argv:
        response = input("\nProceed with migration? (yes/no): ")
        if response.lower() not in ['yes', 'y']:
            print("Migration cancelled.")
            sys.exit(0)
    else:
        print("\n--force flag detected, proceeding with migration...")

    try:
        print("\nConnecting to database...")
        engine = create_engine(db_url, echo=True)

        print("\nCreating tables...")
        SQLModel.metadata.create_all(engine)

        print("\n" + "=" * 60)
        print("Migration completed successfully!")
        print("=" * 60)
        print("\nNext steps:")
        print("1. Start the supervisor service:")
        print("   python -m services.supervisor_service")
        print("\n2. Queue a job:")
        print("   python enqueue_job.py scripts/sample_job.py --at 2030-01-01T09:00:00Z")
        print()

    except Exception as e:
        print("\n" + "=" * 60)
        print(f"Migration failed: {e}")
        print("=" * 60)
        sys.exit(1)


if __name__ == "__main__":
    migrate()
