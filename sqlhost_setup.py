#!/usr/bin/env python3
"""
SQL Server Host Provisioner

Launches a single EC2 instance to host SQL Server for one environment, tags it
so later runs can find it, waits for it to reach the running state and then
polls the database engine until both the admin and the application logins
can authenticate.

Flow:
- Render the boot-data template (deployment tool coordinates) and base64 it
- Count active instances carrying the role tag; create at most one
- Re-check the instance count against the expected count
- Optionally wait for the instance to be running, then wait for SQL Server
"""

import argparse
import base64
import boto3
import botocore
from botocore.config import Config
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import sqlhost_probe
from sqlhost_probe import WaitTimeout, retry_until

REGION = os.environ.get("AWS_REGION", "us-east-1")
AWS_PROFILE = os.environ.get("AWS_PROFILE")
LOG_TO_FILE = None
BOTO_CONFIG = Config(
    retries={"max_attempts": 10, "mode": "adaptive"},
    connect_timeout=15,
    read_timeout=60,
)

# Windows Server with SQL Server Standard; 4 vCPU, 16GB
DEFAULT_INSTANCE_TYPE = os.environ.get("SQLHOST_INSTANCE_TYPE", "m5.xlarge")
AMI_SSM_PARAM = os.environ.get(
    "SQLHOST_AMI_PARAM",
    "/aws/service/ami-windows-latest/Windows_Server-2019-English-Full-SQL_2019_Standard",
)
_RESOLVED_AMI_ID = None

KEY_NAME = os.environ.get("SQLHOST_KEY_NAME", "sqlhost-key")
SECURITY_GROUP_ID = os.environ.get("SQLHOST_SECURITY_GROUP_ID", "")
SUBNET_ID = os.environ.get("SQLHOST_SUBNET_ID", "")
INSTANCE_PROFILE = os.environ.get("SQLHOST_INSTANCE_PROFILE", "sqlhost-instance-profile")

TAG_KEY = "Role"
DEFAULT_TEMPLATE_PATH = Path(__file__).resolve().parent / "templates" / "userdata.ps1.tmpl"

# Secrets are looked up in the environment first, then in SSM Parameter Store
ADMIN_USER = os.environ.get("SQLHOST_ADMIN_USER", "sa")
APP_USER = os.environ.get("SQLHOST_APP_USER", "app")
ADMIN_PASSWORD_ENV = "SQLHOST_ADMIN_PASSWORD"
APP_PASSWORD_ENV = "SQLHOST_APP_PASSWORD"
ADMIN_PASSWORD_PARAM = "/sqlhost/admin-password"
APP_PASSWORD_PARAM = "/sqlhost/app-password"

# Never more than one SQL Server host per environment
MAX_INSTANCES = 1
ACTIVE_STATES = ("pending", "running")

DEFAULT_TIMEOUT = 4800
LAUNCH_POLL_INTERVAL = 10
LAUNCH_WARN_AFTER = 60


def parse_args():
    parser = argparse.ArgumentParser(
        description="Provision a SQL Server host on EC2 and wait until it accepts logins."
    )
    parser.add_argument("--region", default=REGION, help=f"AWS region (default: {REGION}).")
    parser.add_argument("--aws-profile", default=AWS_PROFILE, help="AWS named profile (default: $AWS_PROFILE).")
    parser.add_argument(
        "--instance-type",
        default=DEFAULT_INSTANCE_TYPE,
        help=f"EC2 instance size class (default: {DEFAULT_INSTANCE_TYPE}).",
    )
    parser.add_argument("--image-id", help=f"AMI id (default: resolved from {AMI_SSM_PARAM}).")
    parser.add_argument("--tag-key", default=TAG_KEY, help=f"Tag key used to find the host (default: {TAG_KEY}).")
    parser.add_argument("--tag-value", required=True, help="Tag value (role) identifying this environment's host.")
    parser.add_argument("--key-name", default=KEY_NAME, help=f"EC2 key pair name (default: {KEY_NAME}).")
    parser.add_argument("--security-group-id", default=SECURITY_GROUP_ID, help="Security group for the host.")
    parser.add_argument("--subnet-id", default=SUBNET_ID, help="Subnet for the host (default: account default).")
    parser.add_argument(
        "--instance-profile",
        default=INSTANCE_PROFILE,
        help=f"IAM instance profile name (default: {INSTANCE_PROFILE}).",
    )
    parser.add_argument(
        "--template",
        default=str(DEFAULT_TEMPLATE_PATH),
        help="Boot-data template containing __OCTOPUSURL__, __ENV__ and __ROLE__.",
    )
    parser.add_argument("--octopus-url", default=os.environ.get("OCTOPUS_URL", ""), help="Deployment server URL.")
    parser.add_argument("--environment", default=os.environ.get("OCTOPUS_ENV", ""), help="Deployment environment name.")
    parser.add_argument(
        "--register-deployment",
        action="store_true",
        help="Substitute deployment tool coordinates into the boot data.",
    )
    parser.add_argument(
        "--expected-count",
        type=int,
        default=MAX_INSTANCES,
        help=f"Instances expected after provisioning (default: {MAX_INSTANCES}).",
    )
    parser.add_argument("--wait", action="store_true", help="Wait for the instance and SQL Server to be ready.")
    parser.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT,
        help=f"Seconds allowed for all readiness polling combined (default: {DEFAULT_TIMEOUT}).",
    )
    parser.add_argument("--admin-user", default=ADMIN_USER, help=f"SQL admin login (default: {ADMIN_USER}).")
    parser.add_argument("--app-user", default=APP_USER, help=f"SQL application login (default: {APP_USER}).")
    parser.add_argument(
        "--admin-password-param",
        default=ADMIN_PASSWORD_PARAM,
        help=f"SSM parameter holding the admin password if ${ADMIN_PASSWORD_ENV} is unset.",
    )
    parser.add_argument(
        "--app-password-param",
        default=APP_PASSWORD_PARAM,
        help=f"SSM parameter holding the application password if ${APP_PASSWORD_ENV} is unset.",
    )
    parser.add_argument("--odbc-driver", help="ODBC driver name (default: newest installed SQL Server driver).")
    parser.add_argument("--log-file", help="Also append log lines to this file.")
    parser.add_argument("--cleanup", action="store_true", help="Terminate this environment's host and exit.")
    return parser


def configure_runtime(*, region=None, aws_profile=None, log_file=None):
    global REGION, AWS_PROFILE, LOG_TO_FILE
    if region:
        REGION = region
    if aws_profile:
        AWS_PROFILE = aws_profile
    if log_file:
        LOG_TO_FILE = Path(log_file)
        sqlhost_probe.LOG_TO_FILE = LOG_TO_FILE


def configure_from_args(args):
    configure_runtime(region=args.region, aws_profile=args.aws_profile, log_file=args.log_file)


def ts():
    return datetime.now().strftime("[%Y-%m-%dT%H:%M:%S%z]")


def log(msg):
    line = f"{ts()} {msg}"
    print(line, flush=True)
    if LOG_TO_FILE:
        try:
            LOG_TO_FILE.parent.mkdir(parents=True, exist_ok=True)
            with LOG_TO_FILE.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError:
            pass


def aws_session():
    try:
        return boto3.session.Session(profile_name=AWS_PROFILE, region_name=REGION)
    except botocore.exceptions.ProfileNotFound:
        raise SystemExit(f"ERROR: AWS profile '{AWS_PROFILE}' not found.")


def ec2():
    return aws_session().client("ec2", region_name=REGION, config=BOTO_CONFIG)


def ssm():
    return aws_session().client("ssm", region_name=REGION, config=BOTO_CONFIG)


def resolved_ami_id(override=None):
    global _RESOLVED_AMI_ID
    if override:
        return override
    if _RESOLVED_AMI_ID:
        return _RESOLVED_AMI_ID
    try:
        param = ssm().get_parameter(Name=AMI_SSM_PARAM)
        value = param["Parameter"]["Value"]
        _RESOLVED_AMI_ID = value
        log(f"Using SQL Server AMI via {AMI_SSM_PARAM}: {value}")
        return value
    except botocore.exceptions.ClientError as exc:
        msg = exc.response.get("Error", {}).get("Message", str(exc))
        raise SystemExit(
            f"ERROR: Unable to resolve AMI from SSM ({AMI_SSM_PARAM}): {msg}. Pass --image-id to override."
        )


def load_secret(param_name, env_var):
    """Return a secret from ``env_var`` or, failing that, the SSM parameter ``param_name``."""
    value = os.environ.get(env_var)
    if value:
        return value
    try:
        resp = ssm().get_parameter(Name=param_name, WithDecryption=True)
    except botocore.exceptions.ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "")
        raise SystemExit(
            f"ERROR: Secret not available: set ${env_var} or create SSM parameter {param_name} ({code or exc})."
        )
    return resp["Parameter"]["Value"]


def ensure_keypair_accessible(key_name):
    try:
        ec2().describe_key_pairs(KeyNames=[key_name])
    except botocore.exceptions.ClientError as e:
        if e.response["Error"]["Code"] == "InvalidKeyPair.NotFound":
            raise SystemExit(
                f"ERROR: KeyPair '{key_name}' not found in EC2. "
                "Windows hosts need it to decrypt the Administrator password."
            )
        raise


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class ProvisionSettings:
    tag_value: str
    image_id: str
    admin_password: str = field(repr=False)
    app_password: str = field(repr=False)
    tag_key: str = TAG_KEY
    instance_type: str = DEFAULT_INSTANCE_TYPE
    key_name: str = KEY_NAME
    security_group_id: str = SECURITY_GROUP_ID
    subnet_id: str = SUBNET_ID
    instance_profile: str = INSTANCE_PROFILE
    octopus_url: str = ""
    environment: str = ""
    register_deployment: bool = False
    expected_count: int = MAX_INSTANCES
    wait: bool = False
    timeout: int = DEFAULT_TIMEOUT
    admin_user: str = ADMIN_USER
    app_user: str = APP_USER
    odbc_driver: Optional[str] = None


@dataclass
class InstanceInfo:
    instance_id: str
    state: str
    public_ip: str = ""
    private_ip: str = ""
    instance_type: str = ""
    availability_zone: str = ""


def settings_from_args(args) -> ProvisionSettings:
    """Resolve AMI and secrets once, at the boundary."""
    return ProvisionSettings(
        tag_value=args.tag_value,
        image_id=resolved_ami_id(args.image_id),
        admin_password=load_secret(args.admin_password_param, ADMIN_PASSWORD_ENV),
        app_password=load_secret(args.app_password_param, APP_PASSWORD_ENV),
        tag_key=args.tag_key,
        instance_type=args.instance_type,
        key_name=args.key_name,
        security_group_id=args.security_group_id,
        subnet_id=args.subnet_id,
        instance_profile=args.instance_profile,
        octopus_url=args.octopus_url,
        environment=args.environment,
        register_deployment=args.register_deployment,
        expected_count=args.expected_count,
        wait=args.wait,
        timeout=args.timeout,
        admin_user=args.admin_user,
        app_user=args.app_user,
        odbc_driver=args.odbc_driver,
    )


# ---------------------------------------------------------------------------
# Boot data
# ---------------------------------------------------------------------------

def load_template(path) -> str:
    path = Path(path)
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        log(f"ERROR: Boot-data template not found: {path}")
        raise SystemExit(f"ERROR: Boot-data template not found: {path}")


def render_user_data(template: str, octopus_url: str, environment: str, role: str, register: bool) -> str:
    """Fill the deployment tool placeholders. Values are inserted verbatim."""
    if not register:
        return template
    return (
        template.replace("__OCTOPUSURL__", octopus_url)
        .replace("__ENV__", environment)
        .replace("__ROLE__", role)
    )


def encode_user_data(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def build_user_data(settings: ProvisionSettings, template_path) -> str:
    template = load_template(template_path)
    if settings.register_deployment:
        log(f"Registering with deployment server {settings.octopus_url} "
            f"(environment={settings.environment}, role={settings.tag_value})")
    text = render_user_data(
        template,
        settings.octopus_url,
        settings.environment,
        settings.tag_value,
        settings.register_deployment,
    )
    return encode_user_data(text)


# ---------------------------------------------------------------------------
# EC2 Instances
# ---------------------------------------------------------------------------

def required_count(existing: int, cap: int = MAX_INSTANCES) -> int:
    return max(0, cap - existing)


def instance_filters(tag_key, tag_value, states):
    return [
        {"Name": f"tag:{tag_key}", "Values": [tag_value]},
        {"Name": "instance-state-name", "Values": list(states)},
    ]


def find_instances(tag_key, tag_value, states=ACTIVE_STATES) -> List[InstanceInfo]:
    """Instances carrying the role tag in one of ``states``, ordered by instance id."""
    resp = ec2().describe_instances(Filters=instance_filters(tag_key, tag_value, states))
    instances = []
    for res in resp.get("Reservations", []):
        for inst in res.get("Instances", []):
            instances.append(InstanceInfo(
                instance_id=inst["InstanceId"],
                state=inst.get("State", {}).get("Name", ""),
                public_ip=inst.get("PublicIpAddress", ""),
                private_ip=inst.get("PrivateIpAddress", ""),
                instance_type=inst.get("InstanceType", ""),
                availability_zone=inst.get("Placement", {}).get("AvailabilityZone", ""),
            ))
    return sorted(instances, key=lambda i: i.instance_id)


def tag_instances(instance_ids, tags):
    ec2().create_tags(
        Resources=list(instance_ids),
        Tags=[{"Key": k, "Value": v} for k, v in tags.items()],
    )


def launch_instances(settings: ProvisionSettings, user_data: str, count: int) -> List[str]:
    if count <= 0:
        return []
    ensure_keypair_accessible(settings.key_name)
    params = {
        "ImageId": settings.image_id,
        "InstanceType": settings.instance_type,
        "KeyName": settings.key_name,
        "UserData": user_data,
        "IamInstanceProfile": {"Name": settings.instance_profile},
        "MinCount": count,
        "MaxCount": count,
    }
    if settings.security_group_id:
        params["SecurityGroupIds"] = [settings.security_group_id]
    if settings.subnet_id:
        params["SubnetId"] = settings.subnet_id
    resp = ec2().run_instances(**params)
    ids = [inst["InstanceId"] for inst in resp["Instances"]]
    for iid in ids:
        log(f"CREATED instance: {iid}")
    # No rollback: a tagging failure leaves the created instances untagged
    tag_instances(ids, {
        settings.tag_key: settings.tag_value,
        "Name": f"sqlhost-{settings.tag_value}",
    })
    log(f"TAGGED  {len(ids)} instance(s) with {settings.tag_key}={settings.tag_value}")
    return ids


def ensure_instances(settings: ProvisionSettings, user_data: str) -> List[str]:
    existing = find_instances(settings.tag_key, settings.tag_value)
    needed = required_count(len(existing))
    log(f"Found {len(existing)} active instance(s) tagged {settings.tag_key}={settings.tag_value}; "
        f"{needed} to create")
    for inst in existing:
        log(f"REUSED  instance: {inst.instance_id} ({inst.state})")
    return launch_instances(settings, user_data, needed)


def verify_instance_count(settings: ProvisionSettings) -> Optional[str]:
    """Compare the active instance count to ``expected_count``; return a problem message on mismatch."""
    found = len(find_instances(settings.tag_key, settings.tag_value))
    log(f"Instance count for {settings.tag_key}={settings.tag_value}: {found} (expected {settings.expected_count})")
    if found == settings.expected_count:
        return None
    msg = (f"Expected {settings.expected_count} instance(s) tagged "
           f"{settings.tag_key}={settings.tag_value}, found {found}")
    log(f"WARNING: {msg}")
    return msg


def wait_for_running(settings: ProvisionSettings, started: float, clock=time.monotonic, sleep=time.sleep) -> str:
    """Poll until ``expected_count`` instances are running; return the host's address.

    With several running instances the one with the lowest instance id is the host.
    """
    def running_host():
        running = find_instances(settings.tag_key, settings.tag_value, states=("running",))
        if running and len(running) == settings.expected_count:
            host = running[0]
            log(f"Instance {host.instance_id} running: public={host.public_ip} private={host.private_ip}")
            return host.public_ip or host.private_ip
        log(f"  {len(running)}/{settings.expected_count} running, checking again in {LAUNCH_POLL_INTERVAL}s...")
        return None

    return retry_until(
        running_host,
        interval=LAUNCH_POLL_INTERVAL,
        deadline=settings.timeout,
        started=started,
        label=f"{settings.expected_count} running instance(s) tagged {settings.tag_key}={settings.tag_value}",
        warn_after=LAUNCH_WARN_AFTER,
        retry_on=(),
        clock=clock,
        sleep=sleep,
    )


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------

def cleanup_instances(tag_key, tag_value):
    log(f"Cleanup requested for {tag_key}={tag_value} in {REGION}")
    ids = [i.instance_id for i in find_instances(tag_key, tag_value, states=("pending", "running", "stopping", "stopped"))]
    if not ids:
        log("No tagged instances found; nothing to clean up.")
        return []
    for iid in ids:
        log(f"TERMINATING instance: {iid}")
    ec2().terminate_instances(InstanceIds=ids)
    ec2().get_waiter("instance_terminated").wait(InstanceIds=ids)
    log("Cleanup complete.")
    return ids


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def provision(settings: ProvisionSettings, template_path, clock=time.monotonic, sleep=time.sleep):
    """Run the whole flow. Returns the host address (or None without --wait)."""
    problems = []

    log("=== Preparing Boot Data ===")
    user_data = build_user_data(settings, template_path)

    log("=== Provisioning EC2 Instance ===")
    ensure_instances(settings, user_data)

    log("=== Verifying Instance Count ===")
    problem = verify_instance_count(settings)
    if problem:
        problems.append(problem)

    address = None
    if settings.wait:
        # One clock for launch and both credential loops
        started = clock()

        log("=== Waiting for Instance ===")
        address = wait_for_running(settings, started, clock=clock, sleep=sleep)

        log("=== Checking Database Toolkit ===")
        driver = sqlhost_probe.ensure_odbc_driver(settings.odbc_driver)

        log("=== Waiting for SQL Server ===")
        sqlhost_probe.wait_for_database(
            address,
            sqlhost_probe.admin_credential(settings),
            sqlhost_probe.app_credential(settings),
            driver,
            timeout=settings.timeout,
            started=started,
            clock=clock,
            sleep=sleep,
        )
        log(f"SQL Server on {address} is accepting admin and application logins.")

    log("=== Provisioning Complete ===")
    if problems:
        raise SystemExit("ERROR: " + "; ".join(problems))
    return address


def main():
    parser = parse_args()
    args = parser.parse_args()
    configure_from_args(args)

    if args.cleanup:
        cleanup_instances(args.tag_key, args.tag_value)
        return

    settings = settings_from_args(args)
    log(f"Using {settings!r}")
    try:
        provision(settings, args.template)
    except WaitTimeout as exc:
        raise SystemExit(f"ERROR: {exc}")


if __name__ == "__main__":
    main()
