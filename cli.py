import argparse
import json
import logging

from config import load_settings
from auth_service import AuthError
from exceptions import StoreError
from identity import email_hash, normalize_email
from migrate import migrate_image, migrate_stored_image
from practice_api import PracticeAPI
from settings_schema import SettingsSchema
from storage import FileStorage, ImageBackend


def _backend(settings: SettingsSchema) -> ImageBackend:
    return ImageBackend(
        FileStorage(settings.storage_dir, settings.storage_quota_bytes),
        settings.database_key,
    )


def init_db(settings: SettingsSchema, sync: bool = True) -> None:
    api = PracticeAPI(settings)
    result = api.start(sync=sync)
    if result is not None:
        print(
            f"Exercises: {result.inserted} new, {result.updated} updated, {result.deleted} removed"
        )
    print(f"Database ready in {settings.storage_dir}")


def migrate_db(settings: SettingsSchema) -> None:
    applied = migrate_stored_image(_backend(settings))
    if applied is None:
        print("No database image to migrate")
    elif applied:
        print(f"Applied migrations: {', '.join(str(v) for v in applied)}")
    else:
        print("Database already up to date")


def sync_exercises(settings: SettingsSchema, feed: str | None = None) -> None:
    api = PracticeAPI(settings)
    api.store.initialize()
    result = api.catalog.refresh(feed)
    if result is None:
        print("Exercise catalog unchanged: feed could not be loaded")
    else:
        print(
            f"Exercises: {result.inserted} new, {result.updated} updated, {result.deleted} removed"
        )


def backup_db(settings: SettingsSchema, backup_path: str) -> None:
    image = _backend(settings).load()
    if image is None:
        raise SystemExit("No database image to back up")
    with open(backup_path, "wb") as f:
        f.write(image)


def restore_db(settings: SettingsSchema, backup_path: str) -> None:
    with open(backup_path, "rb") as f:
        image = f.read()
    # Refuse any image the store could not load before overwriting the live slot.
    migrated, _applied = migrate_image(image)
    _backend(settings).save(migrated)


def reset_db(settings: SettingsSchema) -> None:
    api = PracticeAPI(settings)
    api.store.reset()
    api.catalog.refresh()
    print("Database reset")


def register_user(
    settings: SettingsSchema, email: str, password: str, name: str | None = None
) -> str:
    api = PracticeAPI(settings)
    api.store.initialize()
    return api.auth.register(email, password, name)


def show_stats(settings: SettingsSchema, email: str) -> dict:
    api = PracticeAPI(settings)
    api.store.initialize()
    return api.stats.dashboard(email_hash(email), normalize_email(email))


def main() -> None:
    parser = argparse.ArgumentParser(description="guitar.io practice store utilities")
    parser.add_argument("--settings", default="settings.yaml")
    sub = parser.add_subparsers(dest="cmd", required=True)

    init = sub.add_parser("init")
    init.add_argument("--no-sync", action="store_true")

    sub.add_parser("migrate")

    sync = sub.add_parser("sync")
    sync.add_argument("--feed", default=None)

    bkp = sub.add_parser("backup")
    bkp.add_argument("--out", default="guitar_io_backup.db")

    rst = sub.add_parser("restore")
    rst.add_argument("--in", dest="src", default="guitar_io_backup.db")

    sub.add_parser("reset")

    reg = sub.add_parser("register")
    reg.add_argument("--email", required=True)
    reg.add_argument("--password", required=True)
    reg.add_argument("--name", default=None)

    stats = sub.add_parser("stats")
    stats.add_argument("--email", required=True)

    args = parser.parse_args()
    settings = load_settings(args.settings)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.cmd == "init":
            init_db(settings, sync=not args.no_sync)
        elif args.cmd == "migrate":
            migrate_db(settings)
        elif args.cmd == "sync":
            sync_exercises(settings, args.feed)
        elif args.cmd == "backup":
            backup_db(settings, args.out)
        elif args.cmd == "restore":
            restore_db(settings, args.src)
        elif args.cmd == "reset":
            reset_db(settings)
        elif args.cmd == "register":
            key = register_user(settings, args.email, args.password, args.name)
            print(f"Registered {normalize_email(args.email)} ({key})")
        elif args.cmd == "stats":
            print(json.dumps(show_stats(settings, args.email), indent=2))
    except (StoreError, AuthError) as exc:
        raise SystemExit(f"Error: {exc}")


if __name__ == "__main__":
    main()
