"""CLI for the server and job commands.

`server start|status` runs or probes the job service; `job ...` talks to a
running service over HTTP.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from config import ConfigError
from manifest import ManifestError, load_registry
from server.client import JobClient, JobClientError, default_server_url
from server.db import JobStore, get_default_db_path
from server.httpd import DEFAULT_BIND, DEFAULT_PORT, Server
from server.jobs import DEFAULT_MAX_DURATION, JobService, SubprocessRunner

logger = logging.getLogger(__name__)


def _build_service(args) -> JobService:
    """Create a JobService from parsed arguments.

    Raises:
        ConfigError, ManifestError: If the manifest cannot be loaded
    """
    registry = load_registry(args.manifest_file)
    manifest_path = registry.manifest.source_path
    store = JobStore(args.db)
    runner = SubprocessRunner(manifest_file=str(manifest_path) if manifest_path else None)
    return JobService(
        store,
        profiles=registry.profiles.keys(),
        runner=runner,
        max_duration=args.max_duration,
    )


def _handle_start(argv):
    """Handle 'server start' (runs in the foreground)."""
    parser = argparse.ArgumentParser(
        prog="bootstrap-driver server start",
        description="Run the job service in the foreground",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--port", "-p", type=int, default=DEFAULT_PORT, help="Port to listen on")
    parser.add_argument("--bind", "-b", default=DEFAULT_BIND, help="Address to bind to")
    parser.add_argument("--db", type=Path, default=None,
                        help=f"SQLite database path (default: $BOOTSTRAP_DB or {get_default_db_path()})")
    parser.add_argument("--manifest-file", "-M", help="Operations manifest (default: discovered)")
    parser.add_argument("--max-duration", type=float, default=DEFAULT_MAX_DURATION,
                        help="Per-job wall-clock limit in seconds")
    parser.add_argument("--json", action="store_true", help="Print startup info as JSON")
    args = parser.parse_args(argv)

    try:
        service = _build_service(args)
    except (ConfigError, ManifestError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    server = Server(service, bind=args.bind, port=args.port)
    try:
        server.start()
    except OSError as e:
        logger.error("Failed to start server: %s", e)
        return 1

    if args.json:
        print(json.dumps({
            "url": server.url,
            "port": server.port,
            "db": str(service.store.path),
            "profiles": service.profiles,
        }, indent=2))
    else:
        print(f"\nServer running at {server.url}")
        print(f"Database: {service.store.path}")
        print(f"Profiles: {', '.join(service.profiles)}")
        print("\nPress Ctrl+C to stop...")
    sys.stdout.flush()

    server.serve_forever()
    return 0


def _handle_status(argv):
    """Handle 'server status' (health probe)."""
    parser = argparse.ArgumentParser(
        prog="bootstrap-driver server status",
        description="Check whether the job service is healthy",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--server", "-s", default=None,
                        help="Server URL (default: $BOOTSTRAP_SERVER or local)")
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    args = parser.parse_args(argv)

    client = JobClient(args.server)
    healthy = client.health()
    if args.json:
        print(json.dumps({"url": client.base_url, "healthy": healthy}, indent=2))
    else:
        state = "healthy" if healthy else "not reachable"
        print(f"Server {client.base_url}: {state}")
    return 0 if healthy else 1


def main(argv=None):
    """CLI entry point for server command.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    subcommands = {
        "start": _handle_start,
        "status": _handle_status,
    }

    if not argv or argv[0] in ("-h", "--help"):
        print("Usage: bootstrap-driver server <command> [options]")
        print()
        print("Commands:")
        print("  start    Run the job service (foreground)")
        print("  status   Check job service health")
        return 0

    subcmd = argv[0]
    if subcmd not in subcommands:
        print(f"Error: Unknown server command '{subcmd}'", file=sys.stderr)
        print(f"Available commands: {', '.join(subcommands)}", file=sys.stderr)
        return 1

    return subcommands[subcmd](argv[1:])


# -----------------------------------------------------------------------------
# job noun
# -----------------------------------------------------------------------------

def _print_job(job: dict) -> None:
    print(f"Job {job['id']}: {job['status']}")
    print(f"  Project:   {job.get('project_path', job.get('project_id'))}")
    if job.get('profile'):
        print(f"  Profile:   {job['profile']}")
    print(f"  Started:   {job.get('started_at')}")
    if job.get('completed_at'):
        print(f"  Completed: {job['completed_at']}")
    if job.get('exit_code') is not None:
        print(f"  Exit code: {job['exit_code']}")
    if job.get('error'):
        print(f"  Error:     {job['error']}")


def job_main(argv=None):
    """CLI entry point for job command.

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(
        prog="bootstrap-driver job",
        description="Submit and inspect remote bootstrap jobs",
    )
    parser.add_argument("--server", "-s", default=None,
                        help=f"Server URL (default: $BOOTSTRAP_SERVER or {default_server_url()})")
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    sub = parser.add_subparsers(dest="command", required=True)

    submit = sub.add_parser("submit", help="Submit a job for a project path")
    submit.add_argument("path", help="Target project directory (on the server host)")
    submit.add_argument("--profile", "-P", help="Profile to run")
    submit.add_argument("--wait", action="store_true", help="Poll until the job finishes")
    submit.add_argument("--wait-timeout", type=float, default=3600, help="Seconds to wait")

    status = sub.add_parser("status", help="Show job status")
    status.add_argument("job_id", type=int)

    log = sub.add_parser("log", help="Print captured job output")
    log.add_argument("job_id", type=int)

    lst = sub.add_parser("list", help="List recent jobs")
    lst.add_argument("--limit", "-n", type=int, default=20)

    sub.add_parser("projects", help="List known projects")

    args = parser.parse_args(argv)
    client = JobClient(args.server)

    try:
        if args.command == "submit":
            path = str(Path(args.path).expanduser().resolve())
            job_id = client.submit_job(path, args.profile)
            if not args.wait:
                print(json.dumps({"job_id": job_id}) if args.json else f"Submitted job {job_id}")
                return 0
            job = client.wait_for_job(job_id, timeout=args.wait_timeout)
            if args.json:
                print(json.dumps(job, indent=2))
            else:
                _print_job(job)
            return 0 if job.get("status") == "completed" else (job.get("exit_code") or 1)

        if args.command == "status":
            job = client.get_job(args.job_id)
            if args.json:
                print(json.dumps(job, indent=2))
            else:
                _print_job(job)
            return 0

        if args.command == "log":
            sys.stdout.write(client.get_job_log(args.job_id))
            return 0

        if args.command == "list":
            jobs = client.list_jobs(args.limit)
            if args.json:
                print(json.dumps(jobs, indent=2))
            elif not jobs:
                print("No jobs")
            else:
                for job in jobs:
                    code = '' if job.get('exit_code') is None else f" exit={job['exit_code']}"
                    print(f"{job['id']:>5}  {job['status']:<9} {job['started_at']}  "
                          f"{job.get('project_path', '')}{code}")
            return 0

        projects = client.list_projects()
        if args.json:
            print(json.dumps(projects, indent=2))
        elif not projects:
            print("No projects")
        else:
            for project in projects:
                print(f"{project['id']:>5}  {project['name']:<20} {project['path']}"
                      f"  (profile: {project.get('profile') or '-'})")
        return 0

    except JobClientError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
