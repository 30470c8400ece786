import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .camera import CameraStream
from .checkin import CheckinService
from .config import RuntimeConfigStore, Settings, get_settings
from .enrollment import EnrollmentService
from .exceptions import AttendanceError, NotFoundError
from .face import face_model_loader
from .logger import setup_logger
from .models import GeoPoint, Group, Session, SessionLocation, parse_datetime, utc_now
from .recorder import PresenceRecorder
from .scheduler import RecognitionScheduler, ReportKind, ScanReport
from .storage import GROUPS, SESSIONS, SUBJECTS, StorageGateway, open_gateway


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Face-verified lecture attendance")
    subparsers = parser.add_subparsers(dest="command", required=True)

    enroll = subparsers.add_parser("enroll", help="Enroll a subject from a photo with exactly one face")
    enroll.add_argument("--key", required=True, help="External key (roll number)")
    enroll.add_argument("--name", default=None, help="Display name (required for new subjects)")
    enroll.add_argument("--image", required=True, type=Path, help="Path to the enrollment photo")
    enroll.add_argument("--replace", action="store_true", help="Re-enroll an existing subject")

    unenroll = subparsers.add_parser("unenroll", help="Delete a subject with its memberships and events")
    unenroll.add_argument("--key", required=True, help="External key")

    kiosk = subparsers.add_parser("kiosk", help="Run live recognition for one session")
    kiosk.add_argument("--session", required=True, dest="session_id", help="Session id")
    kiosk.add_argument("--camera", type=int, default=None, help="Webcam index override")
    kiosk.add_argument("--lat", type=float, default=None, help="Kiosk latitude")
    kiosk.add_argument("--lng", type=float, default=None, help="Kiosk longitude")

    serve = subparsers.add_parser("serve", help="Run the remote storage server")
    serve.add_argument("--host", default="0.0.0.0", help="Host interface")
    serve.add_argument("--port", type=int, default=9000, help="Port")

    config = subparsers.add_parser("config", help="Show or change runtime settings")
    config_sub = config.add_subparsers(dest="action", required=True)
    config_sub.add_parser("show", help="Print the current runtime settings")
    config_set = config_sub.add_parser("set", help="Change runtime settings")
    config_set.add_argument("--threshold", type=float, default=None, help="Maximum match distance (0-1)")
    config_set.add_argument("--lockout-minutes", type=int, default=None, help="Per-subject cool-down")
    config_set.add_argument("--storage-mode", choices=["local", "remote"], default=None)

    group = subparsers.add_parser("group", help="Manage groups (courses)")
    group_sub = group.add_subparsers(dest="action", required=True)
    group_create = group_sub.add_parser("create", help="Create a group")
    group_create.add_argument("--code", required=True)
    group_create.add_argument("--title", required=True)
    group_create.add_argument("--owner", default="")
    group_sub.add_parser("list", help="List groups")

    session = subparsers.add_parser("session", help="Manage sessions (lectures)")
    session_sub = session.add_subparsers(dest="action", required=True)
    session_create = session_sub.add_parser("create", help="Schedule a session")
    session_create.add_argument("--group", required=True, help="Group code")
    session_create.add_argument("--starts", required=True, help="ISO start time")
    session_create.add_argument("--ends", required=True, help="ISO end time")
    session_create.add_argument("--room", default=None)
    session_create.add_argument("--lat", type=float, default=None)
    session_create.add_argument("--lng", type=float, default=None)
    session_create.add_argument("--radius", type=float, default=None, help="Geofence radius in metres")
    session_create.add_argument("--enable", action="store_true", help="Enable attendance immediately")
    for name in ("enable", "disable"):
        toggle = session_sub.add_parser(name, help=f"{name.capitalize()} attendance for a session")
        toggle.add_argument("session_id")
    session_list = session_sub.add_parser("list", help="List sessions of a group")
    session_list.add_argument("--group", required=True, help="Group code")

    member = subparsers.add_parser("member", help="Attach subjects to groups")
    member_sub = member.add_subparsers(dest="action", required=True)
    for name in ("add", "remove"):
        item = member_sub.add_parser(name)
        item.add_argument("--key", required=True, help="Subject external key")
        item.add_argument("--group", required=True, help="Group code")

    checkin = subparsers.add_parser("checkin", help="Self-service check-in by location")
    checkin.add_argument("--key", required=True, help="Subject external key")
    checkin.add_argument("--session", dest="session_id", default=None, help="Session id (omit to list)")
    checkin.add_argument("--lat", type=float, default=None)
    checkin.add_argument("--lng", type=float, default=None)

    events = subparsers.add_parser("events", help="List presence events of a session")
    events.add_argument("--session", dest="session_id", required=True)

    return parser


def _group_by_code(gateway: StorageGateway, code: str) -> Group:
    rows = gateway.get_all(GROUPS, code=code.strip())
    if not rows:
        raise NotFoundError(f"Group '{code}' not found.")
    return rows[0]


def _point(lat: Optional[float], lng: Optional[float]) -> Optional[GeoPoint]:
    if lat is None or lng is None:
        return None
    return GeoPoint(lat, lng)


def _print_report(report: ScanReport) -> None:
    if report.kind is ReportKind.NO_MATCH:
        return
    stamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{stamp}] {report.kind.value}: {report.message}")


def _run_kiosk(args, settings: Settings, gateway: StorageGateway, config_store: RuntimeConfigStore) -> int:
    camera = CameraStream(
        camera_index=settings.camera_index if args.camera is None else args.camera,
        frame_width=settings.frame_width,
        frame_height=settings.frame_height,
        acquire_timeout=settings.camera_acquire_timeout_seconds,
    )
    kiosk_location = _point(args.lat, args.lng)
    scheduler = RecognitionScheduler(
        session_id=args.session_id,
        gateway=gateway,
        camera=camera,
        config_provider=config_store.match_config,
        model_loader=face_model_loader,
        recorder=PresenceRecorder(gateway, config_store.match_config),
        sample_interval=settings.sample_interval_seconds,
        inference_timeout=settings.inference_timeout_seconds,
        io_timeout=settings.request_timeout_seconds + 2.0,
        min_face_size=settings.min_face_size,
        location_provider=(lambda: kiosk_location) if kiosk_location is not None else None,
        on_report=_print_report,
    )
    try:
        asyncio.run(scheduler.run())
    except KeyboardInterrupt:
        scheduler.stop()
    if scheduler.error is not None:
        print(f"Error: {scheduler.error}")
        return 1
    print("Recognition stopped.")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = setup_logger("main")
    settings = get_settings()
    config_store = RuntimeConfigStore(settings.runtime_config_path)

    try:
        if args.command == "serve":
            import uvicorn

            from .server import create_app

            uvicorn.run(create_app(settings), host=args.host, port=args.port, log_level="info")
            return 0

        if args.command == "config":
            if args.action == "set":
                changes = {
                    key: value
                    for key, value in (
                        ("recognition_threshold", args.threshold),
                        ("lockout_window_minutes", args.lockout_minutes),
                        ("storage_mode", args.storage_mode),
                    )
                    if value is not None
                }
                config_store.update(**changes)
            for key, value in config_store.current().model_dump().items():
                print(f"{key:<24} {value}")
            return 0

        with open_gateway(settings, config_store.current().storage_mode) as gateway:
            return _dispatch(args, settings, gateway, config_store)

    except AttendanceError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1


def _dispatch(args, settings: Settings, gateway: StorageGateway, config_store: RuntimeConfigStore) -> int:
    if args.command == "enroll":
        service = EnrollmentService(gateway, min_face_size=settings.min_face_size)
        if args.replace:
            subject = service.re_enroll(args.key, args.image)
            print(f"Re-enrolled {subject.external_key} ({subject.display_name}).")
        else:
            if not args.name:
                raise AttendanceError("--name is required when enrolling a new subject.")
            subject = service.enroll(args.key, args.name, args.image)
            print(f"Enrolled {subject.external_key} ({subject.display_name}) as {subject.id}.")
        return 0

    if args.command == "unenroll":
        EnrollmentService(gateway).delete(args.key)
        print(f"Deleted {args.key.strip()}.")
        return 0

    if args.command == "kiosk":
        return _run_kiosk(args, settings, gateway, config_store)

    if args.command == "group":
        if args.action == "create":
            group = gateway.create(GROUPS, Group(code=args.code.strip(), title=args.title.strip(), owner=args.owner))
            print(f"Created group {group.code} ({group.id}).")
            return 0
        groups = gateway.get_all(GROUPS)
        if not groups:
            print("No groups.")
        for group in groups:
            print(f"{group.code:<12} {group.title:<40} {group.id}")
        return 0

    if args.command == "session":
        return _session_command(args, gateway)

    if args.command == "member":
        group = _group_by_code(gateway, args.group)
        service = EnrollmentService(gateway)
        if args.action == "add":
            service.add_to_group(args.key, group.id or "")
            print(f"{args.key} joined {group.code}.")
        else:
            removed = service.remove_from_group(args.key, group.id or "")
            print(f"{args.key} {'left' if removed else 'was not in'} {group.code}.")
        return 0

    if args.command == "checkin":
        service = CheckinService(gateway, PresenceRecorder(gateway, config_store.match_config))
        if args.session_id is None:
            candidates = service.active_sessions(args.key)
            if not candidates:
                print("No active sessions.")
            for candidate in candidates:
                marker = "recorded" if candidate.already_recorded else "open"
                print(f"{candidate.session.id}  {candidate.session.room or '-':<10} {marker}")
            return 0
        result = service.check_in(args.key, args.session_id, _point(args.lat, args.lng))
        print(f"{result.outcome.value}" + (f" (total {result.total_count})" if result.total_count is not None else ""))
        return 0 if result.outcome.value in ("recorded", "already_recorded") else 2

    if args.command == "events":
        events = gateway.events_for_session(args.session_id)
        if not events:
            print("No presence events.")
        for event in events:
            subject = gateway.get_by_id(SUBJECTS, event.subject_id)
            label = subject.external_key if subject else event.subject_id
            confidence = "-" if event.confidence is None else f"{event.confidence:.2f}"
            print(f"{label:<16} {event.marked_at.isoformat():<34} {event.method.value:<9} {confidence}")
        print(f"Total: {len(events)}")
        return 0

    return 1


def _session_command(args, gateway: StorageGateway) -> int:
    if args.action == "create":
        group = _group_by_code(gateway, args.group)
        location = None
        if args.lat is not None and args.lng is not None:
            location = SessionLocation(args.lat, args.lng, args.radius or 100.0)
        try:
            starts_at = parse_datetime(args.starts)
            ends_at = parse_datetime(args.ends)
        except ValueError as exc:
            raise AttendanceError(f"Invalid session time: {exc}") from exc
        if ends_at <= starts_at:
            raise AttendanceError("Session must end after it starts.")
        session = gateway.create(
            SESSIONS,
            Session(
                group_id=group.id or "",
                starts_at=starts_at,
                ends_at=ends_at,
                location=location,
                events_enabled=args.enable,
                room=args.room,
                created_at=utc_now(),
            ),
        )
        print(f"Scheduled session {session.id} for {group.code}.")
        return 0

    if args.action in ("enable", "disable"):
        session = gateway.update(SESSIONS, args.session_id, {"events_enabled": args.action == "enable"})
        print(f"Attendance {'enabled' if session.events_enabled else 'disabled'} for {session.id}.")
        return 0

    group = _group_by_code(gateway, args.group)
    now = utc_now()
    for session in gateway.sessions_for_group(group.id or ""):
        status = "active" if session.is_active(now) else "-"
        enabled = "on" if session.events_enabled else "off"
        print(f"{session.id:<40} {session.starts_at.isoformat():<28} {status:<7} events={enabled}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
