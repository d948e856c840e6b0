from database import engine, Base, SessionLocal
import crud
import models  # noqa: F401  registers tables

print("Dropping all tables...")
Base.metadata.drop_all(bind=engine)

print("Creating all tables...")
Base.metadata.create_all(bind=engine)

db = SessionLocal()
try:
    if crud.ensure_default_admin(db):
        print("Seeded default admin account.")
finally:
    db.close()

print("Database reset complete!")
