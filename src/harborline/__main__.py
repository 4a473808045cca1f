"""Harborline CLI entry point."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from harborline.auth import generate_api_key
from harborline.config import DEFAULT_CONFIG_FILE

# ── Default template for `harborline init` ───────────────────────────────────

_DEFAULT_CONFIG = """\
# harborline.yaml: Harborline configuration
# Every key is optional; values shown are the defaults unless noted.

kubernetes:
  # kubeconfig: ~/.kube/config      # unset = in-cluster, then ~/.kube/config
  # master_url: https://10.0.0.1:6443
  job_namespace: default
  service_account: default
  job_prefix: harborline
  job_ttl_seconds: 3600

registry:
  host: harbor.local
  project: library
  # ip: 192.168.1.10                # hostAliases entry when the host has no DNS
  secret_name: harbor-registry-secret  # kubernetes.io/dockerconfigjson secret
  insecure: true

git:
  # token: glpat-...                # default token for private repositories
  # proxy: http://proxy.local:3128
  low_speed_limit: 1000
  low_speed_time: 30

images:
  git: alpine/git:latest
  build: maven:3.9-eclipse-temurin-17
  kaniko: gcr.io/kaniko-project/executor:latest
  publisher: gcr.io/go-containerregistry/crane:debug
  importer: rancher/k3s:latest

resources:
  image_build_cpu_request: 500m
  image_build_cpu_limit: "2"
  image_build_memory_request: 1Gi
  image_build_memory_limit: 4Gi
  # build_cache_claim: maven-repo-pvc   # unset = emptyDir
  containerd_socket: /run/k3s/containerd/containerd.sock

runtime:
  max_concurrent_runs: 4
  poll_interval: 5
  sweep_interval: 60
  inactivity_timeout: 1800
  keep_failed_jobs: false
  reap_orphans_on_startup: true

deploy:
  pull_policy_push: Always
  pull_policy_import: IfNotPresent
  fail_on_error: false

api:
  # api_key: {api_key}
"""


def _init_config(path: Path) -> None:
    """Write a commented default harborline.yaml."""
    if path.exists():
        print(f"Error: {path} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_DEFAULT_CONFIG.format(api_key=generate_api_key()))

    print(f"Wrote {path}")
    print()
    print("Next steps:")
    print(f"  1. Review {path} (registry host, images, namespace)")
    print("  2. Create the registry secret:")
    print("     kubectl create secret docker-registry harbor-registry-secret \\")
    print("       --docker-server=<host> --docker-username=<user> --docker-password=<password>")
    print(f"  3. Run: harborline serve --config {path}")


def main():
    parser = argparse.ArgumentParser(
        prog="harborline",
        description="Harborline: Kubernetes-native build-and-deploy pipelines",
    )

    subparsers = parser.add_subparsers(dest="command")

    # harborline init
    init_parser = subparsers.add_parser("init", help="Write a default harborline.yaml")
    init_parser.add_argument(
        "--path",
        type=Path,
        default=Path.cwd() / DEFAULT_CONFIG_FILE,
        help=f"Where to write the config (default: ./{DEFAULT_CONFIG_FILE})",
    )

    # harborline serve
    serve_parser = subparsers.add_parser("serve", help="Start the Harborline API server")
    serve_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Path to the config file (default: ./{DEFAULT_CONFIG_FILE})",
    )
    serve_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    args = parser.parse_args()

    if args.command == "init":
        _init_config(args.path)
        return

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.config is not None and not args.config.exists():
        print(f"Error: config file not found: {args.config}", file=sys.stderr)
        print("Run 'harborline init' to create one, or omit --config for defaults", file=sys.stderr)
        sys.exit(1)

    # Create and run app
    import uvicorn

    from harborline.server import create_app

    app = create_app(config_path=args.config)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
