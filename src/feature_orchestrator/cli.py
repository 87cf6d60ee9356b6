from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from .config import load_settings
from .errors import OrchestratorError
from .logging_utils import configure_logging
from .render import render_plan, render_summary, render_tasks
from .service import OrchestratorService


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2) + '\n')


def _with_service(args: argparse.Namespace, body: Callable[[OrchestratorService], Awaitable[int]]) -> int:
    async def _run() -> int:
        service = OrchestratorService.for_project(_resolve_project_dir(args.project_dir))
        await service.startup(monitor=False)
        try:
            return await body(service)
        finally:
            await service.shutdown()

    try:
        return asyncio.run(_run())
    except OrchestratorError as exc:
        sys.stderr.write(f'{exc}\n')
        return 1


def _feature_load(args: argparse.Namespace) -> int:
    async def _body(service: OrchestratorService) -> int:
        feature = await service.load_feature(Path(args.path))
        _emit({'feature': feature.to_dict()})
        return 0

    return _with_service(args, _body)


def _feature_list(args: argparse.Namespace) -> int:
    async def _body(service: OrchestratorService) -> int:
        features = await service.list_features()
        _emit({'features': [f.to_dict() for f in features]})
        return 0

    return _with_service(args, _body)


def _feature_plan(args: argparse.Namespace) -> int:
    async def _body(service: OrchestratorService) -> int:
        feature = await service.get_feature(args.feature_id)
        plans = await service.plan_feature(args.feature_id)
        if args.format == 'text':
            sys.stdout.write(render_plan(feature, plans))
        else:
            _emit({'feature_id': feature.id, 'phases': [p.to_dict() for p in plans]})
        return 0

    return _with_service(args, _body)


def _feature_archive(args: argparse.Namespace) -> int:
    async def _body(service: OrchestratorService) -> int:
        feature = await service.archive_feature(args.feature_id)
        _emit({'feature': feature.to_dict()})
        return 0

    return _with_service(args, _body)


def _task_list(args: argparse.Namespace) -> int:
    async def _body(service: OrchestratorService) -> int:
        tasks = await service.list_tasks(args.feature_id, args.phase)
        if args.format == 'text':
            sys.stdout.write(render_tasks(tasks))
        else:
            _emit({'tasks': [t.to_dict() for t in tasks]})
        return 0

    return _with_service(args, _body)


def _task_status(args: argparse.Namespace) -> int:
    async def _body(service: OrchestratorService) -> int:
        task = await service.state.update_task_status(
            args.feature_id, args.task_id, args.status, actor='cli', note=args.note or ''
        )
        _emit({'task': task.to_dict()})
        return 0

    return _with_service(args, _body)


def _phase_run(args: argparse.Namespace) -> int:
    # Workers are children of this process, so the command stays attached until they exit.
    async def _body(service: OrchestratorService) -> int:
        summary = await service.run_phase(args.feature_id, args.phase)
        started = [summary.sessions[tid] for tid in summary.started]
        if started:
            try:
                await asyncio.gather(*(service.wait_for_session(sid, args.timeout) for sid in started))
            except asyncio.TimeoutError:
                sys.stderr.write(f'Timed out after {args.timeout}s; killing remaining workers\n')
                await asyncio.gather(*(service.kill_session(sid) for sid in started))
        sessions = [(await service.get_session(sid)).to_dict() for sid in started]
        if args.format == 'text':
            sys.stdout.write(render_summary(summary))
        else:
            _emit({'summary': summary.to_dict(), 'sessions': sessions})
        return 1 if summary.failed_to_start else 0

    return _with_service(args, _body)


def _session_list(args: argparse.Namespace) -> int:
    async def _body(service: OrchestratorService) -> int:
        sessions = await service.list_sessions(args.feature_id)
        _emit({'sessions': [s.to_dict() for s in sessions]})
        return 0

    return _with_service(args, _body)


def _session_transcript(args: argparse.Namespace) -> int:
    async def _body(service: OrchestratorService) -> int:
        events = await service.get_transcript(args.session_id)
        _emit({'session_id': args.session_id, 'events': [e.to_dict() for e in events]})
        return 0

    return _with_service(args, _body)


def _session_resume(args: argparse.Namespace) -> int:
    async def _body(service: OrchestratorService) -> int:
        record = await service.resume_session(args.session_id)
        if args.wait:
            record = await service.wait_for_session(record.id)
        _emit({'session': record.to_dict()})
        return 0

    return _with_service(args, _body)


def _server(args: argparse.Namespace) -> int:
    import uvicorn

    from .api import create_app

    app = create_app(project_dir=_resolve_project_dir(args.project_dir))
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feature orchestrator: run feature phases through worker sessions')
    parser.add_argument('--project-dir', default=None, help='Target project directory (default: current working directory)')
    parser.add_argument('--log-level', default=None, help='Log level (default: from config, else INFO)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    server = subparsers.add_parser('server', help='Start the web server')
    server.add_argument('--host', default='127.0.0.1')
    server.add_argument('--port', default=8000, type=int)
    server.set_defaults(func=_server)

    feature = subparsers.add_parser('feature', help='Manage features')
    feature_sub = feature.add_subparsers(dest='feature_cmd', required=True)
    fload = feature_sub.add_parser('load', help='Load a feature definition YAML file')
    fload.add_argument('path')
    fload.set_defaults(func=_feature_load)
    flist = feature_sub.add_parser('list', help='List features')
    flist.set_defaults(func=_feature_list)
    fplan = feature_sub.add_parser('plan', help='Show the dry-run execution plan of a feature')
    fplan.add_argument('feature_id')
    fplan.add_argument('--format', default='json', choices=['json', 'text'])
    fplan.set_defaults(func=_feature_plan)
    farchive = feature_sub.add_parser('archive', help='Cancel and archive a feature')
    farchive.add_argument('feature_id')
    farchive.set_defaults(func=_feature_archive)

    task = subparsers.add_parser('task', help='Inspect and move tasks')
    task_sub = task.add_subparsers(dest='task_cmd', required=True)
    tlist = task_sub.add_parser('list', help='List tasks of a feature')
    tlist.add_argument('feature_id')
    tlist.add_argument('--phase', default=None, type=int)
    tlist.add_argument('--format', default='json', choices=['json', 'text'])
    tlist.set_defaults(func=_task_list)
    tstatus = task_sub.add_parser('status', help='Move a task to a new status')
    tstatus.add_argument('feature_id')
    tstatus.add_argument('task_id')
    tstatus.add_argument('status', choices=['pending', 'in_progress', 'blocked', 'qa', 'completed'])
    tstatus.add_argument('--note', default=None)
    tstatus.set_defaults(func=_task_status)

    phase = subparsers.add_parser('phase', help='Run feature phases')
    phase_sub = phase.add_subparsers(dest='phase_cmd', required=True)
    prun = phase_sub.add_parser('run', help='Start every ready task of a phase and wait for the workers')
    prun.add_argument('feature_id')
    prun.add_argument('phase', type=int)
    prun.add_argument('--timeout', default=None, type=float, help='Seconds to wait before killing workers')
    prun.add_argument('--format', default='json', choices=['json', 'text'])
    prun.set_defaults(func=_phase_run)

    session = subparsers.add_parser('session', help='Inspect worker sessions')
    session_sub = session.add_subparsers(dest='session_cmd', required=True)
    slist = session_sub.add_parser('list', help='List sessions')
    slist.add_argument('--feature-id', default=None)
    slist.set_defaults(func=_session_list)
    stranscript = session_sub.add_parser('transcript', help='Print the persisted transcript of a session')
    stranscript.add_argument('session_id')
    stranscript.set_defaults(func=_session_transcript)
    sresume = session_sub.add_parser('resume', help='Resume a stopped or crashed session')
    sresume.add_argument('session_id')
    sresume.add_argument('--wait', action='store_true')
    sresume.set_defaults(func=_session_resume)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    level = args.log_level
    if level is None:
        try:
            level = load_settings(_resolve_project_dir(args.project_dir)).log_level
        except OrchestratorError as exc:
            sys.stderr.write(f'{exc}\n')
            return 1
    args.log_level = level
    configure_logging(level)
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == '__main__':
    raise SystemExit(main())
