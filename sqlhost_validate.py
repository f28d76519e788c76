#!/usr/bin/env python3
"""
Validate an already provisioned SQL Server host and run one-shot login checks.
"""

import argparse
import sys
from typing import Optional

import botocore

import sqlhost_probe
import sqlhost_setup
from sqlhost_probe import Credential
from sqlhost_setup import log


def discover_host(tag_key: str, tag_value: str) -> Optional[sqlhost_setup.InstanceInfo]:
    instances = sqlhost_setup.find_instances(tag_key, tag_value)
    if len(instances) > 1:
        log(f"WARNING: {len(instances)} instances tagged {tag_key}={tag_value}; using {instances[0].instance_id}")
    return instances[0] if instances else None


def check_login(address: str, credential: Credential, driver: str) -> bool:
    try:
        version = sqlhost_probe.probe(address, credential, driver)
    except Exception as exc:  # noqa: BLE001
        log(f"  {credential.label} login ({credential.username}): FAIL ({exc})")
        return False
    log(f"  {credential.label} login ({credential.username}): PASS")
    log(f"    {version.splitlines()[0]}")
    return True


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Validate a provisioned SQL Server host."
    )
    parser.add_argument(
        "--host",
        help="SQL Server address (auto-discovered from EC2 tags if not specified)",
    )
    parser.add_argument("--tag-key", default=sqlhost_setup.TAG_KEY, help="Tag key used to find the host")
    parser.add_argument("--tag-value", help="Tag value (role) identifying the host")
    parser.add_argument(
        "--region",
        default=sqlhost_setup.REGION,
        help=f"AWS region for host discovery (default: {sqlhost_setup.REGION})",
    )
    parser.add_argument("--aws-profile", default=sqlhost_setup.AWS_PROFILE, help="AWS profile")
    parser.add_argument("--admin-user", default=sqlhost_setup.ADMIN_USER, help="SQL admin login")
    parser.add_argument("--app-user", default=sqlhost_setup.APP_USER, help="SQL application login")
    parser.add_argument("--admin-password-param", default=sqlhost_setup.ADMIN_PASSWORD_PARAM)
    parser.add_argument("--app-password-param", default=sqlhost_setup.APP_PASSWORD_PARAM)
    parser.add_argument("--odbc-driver", help="ODBC driver name")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    sqlhost_setup.configure_runtime(region=args.region, aws_profile=args.aws_profile)

    if not args.host and not args.tag_value:
        raise SystemExit("ERROR: Pass --host or --tag-value")

    log("=" * 60)
    log("SQL Server Host Validation")
    log("=" * 60)

    checks = []
    host = args.host

    if args.tag_value:
        log("\n--- AWS Infrastructure ---")
        try:
            info = discover_host(args.tag_key, args.tag_value)
        except botocore.exceptions.ClientError as exc:
            raise SystemExit(f"ERROR: Unable to describe instances: {exc}")
        checks.append(("Instance Found", info is not None))
        if info is None:
            log(f"FAIL: No instance tagged {args.tag_key}={args.tag_value}")
            if not host:
                raise SystemExit("Validation failed: no host found")
        else:
            log(f"  Instance ID: {info.instance_id}")
            log(f"  Instance Type: {info.instance_type}")
            log(f"  Availability Zone: {info.availability_zone or 'N/A'}")
            log(f"  State: {info.state}")
            log(f"  Public IP: {info.public_ip or 'N/A'}")
            log(f"  Private IP: {info.private_ip or 'N/A'}")
            checks.append(("Instance Running", info.state == "running"))
            host = host or info.public_ip or info.private_ip

    if not host:
        raise SystemExit("ERROR: No host address available")

    log(f"\n--- SQL Server ({host}) ---")
    driver = sqlhost_probe.ensure_odbc_driver(args.odbc_driver)
    admin = Credential(
        args.admin_user,
        sqlhost_setup.load_secret(args.admin_password_param, sqlhost_setup.ADMIN_PASSWORD_ENV),
        label="admin",
    )
    app = Credential(
        args.app_user,
        sqlhost_setup.load_secret(args.app_password_param, sqlhost_setup.APP_PASSWORD_ENV),
        label="application",
    )
    checks.append(("Admin Login", check_login(host, admin, driver)))
    checks.append(("Application Login", check_login(host, app, driver)))

    log("\n" + "=" * 60)
    log("Validation Summary")
    log("=" * 60)

    passed = sum(1 for _, ok in checks if ok)
    total = len(checks)

    for name, ok in checks:
        status = "PASS" if ok else "FAIL"
        log(f"  [{status}] {name}")

    log(f"\nResult: {passed}/{total} checks passed")

    if passed == total:
        log("\nSQL Server host is ready.")
        return 0
    log("\nSome checks failed. Review the output above.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
