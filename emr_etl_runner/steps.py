# emr_etl_runner/steps.py
"""Step model: the three kinds of EMR step a plan is made of.

- CopyStep: an s3-dist-cp invocation (S3 <-> HDFS, S3 -> archive)
- CustomBinaryStep: a jar run with a plain argument list (RDB Loader, HBase)
- DistributedJobStep: a Scalding (legacy) or Spark (modern) job

Each step knows its ``kind`` tag; ``to_emr_step`` dispatches on that tag to
produce the ``Steps`` entry expected by ``emr.run_job_flow``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

JAVA_PACKAGE = "com.snowplowanalytics.snowplow"

ACTION_ON_FAILURE = "TERMINATE_JOB_FLOW"
COMMAND_RUNNER_JAR = "command-runner.jar"
LEGACY_S3DISTCP_JAR = "/home/hadoop/lib/emr-s3distcp-1.0.jar"

COPY_STEP_PREFIX = "S3DistCp Step"
CUSTOM_JAR_STEP_PREFIX = "Custom Jar Step"
SCALDING_STEP_PREFIX = "Scalding Step"
SPARK_STEP_PREFIX = "Spark Step"


class StepKind(str, Enum):
    COPY = "copy"
    CUSTOM_BINARY = "custom_binary"
    DISTRIBUTED_JOB = "distributed_job"


class Engine(str, Enum):
    """Execution engine of a distributed job; decides the argument naming convention."""

    LEGACY = "scalding"
    MODERN = "spark"


# Folder roles -> argument keys, per engine. This is the wire contract with the jobs.
LEGACY_FOLDER_KEYS = {
    "in": "input_folder",
    "good": "output_folder",
    "bad": "bad_rows_folder",
    "errors": "exceptions_folder",
}
MODERN_FOLDER_KEYS = {
    "in": "input-folder",
    "good": "output-folder",
    "bad": "bad-folder",
}

SPARK_ARGUMENTS = {"master": "yarn", "deploy-mode": "cluster"}


@dataclass(frozen=True)
class StepFolders:
    input: str | None
    good: str | None
    bad: str | None
    errors: str | None = None

    def by_role(self) -> dict[str, str | None]:
        return {"in": self.input, "good": self.good, "bad": self.bad, "errors": self.errors}


@dataclass(frozen=True)
class CopyStep:
    name: str
    src: str
    dest: str
    s3_endpoint: str
    src_pattern: str | None = None
    group_by: str | None = None
    target_size: str | None = None
    output_codec: str | None = None
    delete_on_success: bool = False

    kind: ClassVar[StepKind] = StepKind.COPY

    @property
    def arguments(self) -> list[str]:
        args = ["--src", self.src, "--dest", self.dest]
        if self.src_pattern is not None:
            args += ["--srcPattern", self.src_pattern]
        args += ["--s3Endpoint", self.s3_endpoint]
        if self.group_by is not None:
            args += ["--groupBy", self.group_by]
        if self.target_size is not None:
            args += ["--targetSize", self.target_size]
        if self.output_codec is not None:
            args += ["--outputCodec", self.output_codec]
        if self.delete_on_success:
            args.append("--deleteOnSuccess")
        return args


@dataclass(frozen=True)
class CustomBinaryStep:
    name: str
    jar: str
    args: tuple[str, ...] = ()

    kind: ClassVar[StepKind] = StepKind.CUSTOM_BINARY

    @property
    def arguments(self) -> list[str]:
        return list(self.args)


@dataclass(frozen=True)
class DistributedJobStep:
    name: str
    jar: str
    main_class: str
    engine: Engine
    job_arguments: dict[str, str] = field(default_factory=dict)

    kind: ClassVar[StepKind] = StepKind.DISTRIBUTED_JOB

    @property
    def arguments(self) -> list[str]:
        """Job arguments as ``--key value`` pairs, in insertion order."""
        args: list[str] = []
        for key, value in self.job_arguments.items():
            args += [f"--{key}", value]
        return args


Step = Union[CopyStep, CustomBinaryStep, DistributedJobStep]


def build_copy_step(
    name: str,
    src: str,
    dest: str,
    *,
    s3_endpoint: str,
    src_pattern: str | None = None,
    output_codec: str | None = None,
    group_by: str | None = None,
    target_size: str | None = None,
    delete_on_success: bool = False,
) -> CopyStep:
    return CopyStep(
        name=f"{COPY_STEP_PREFIX}: {name}",
        src=src,
        dest=dest,
        s3_endpoint=s3_endpoint,
        src_pattern=src_pattern,
        group_by=group_by,
        target_size=target_size,
        output_codec=output_codec,
        delete_on_success=delete_on_success,
    )


def build_custom_binary_step(name: str, jar: str, arguments: list[str]) -> CustomBinaryStep:
    return CustomBinaryStep(name=f"{CUSTOM_JAR_STEP_PREFIX}: {name}", jar=jar, args=tuple(arguments))


def build_binary_step(
    name: str,
    jar: str,
    main_class: str,
    folders: StepFolders,
    extra_args: dict[str, str] | None = None,
    engine: Engine = Engine.LEGACY,
) -> DistributedJobStep:
    """Build a Scalding or Spark job step.

    ``main_class`` is relative to ``JAVA_PACKAGE``. Folder roles are mapped to
    the engine's argument keys after ``extra_args``; absent folders are
    omitted rather than passed as empty. The modern engine has no errors
    folder, so that role is dropped for it.
    """
    keys = MODERN_FOLDER_KEYS if engine is Engine.MODERN else LEGACY_FOLDER_KEYS
    arguments = dict(extra_args or {})
    for role, location in folders.by_role().items():
        if role in keys and location is not None:
            arguments[keys[role]] = location

    prefix = SPARK_STEP_PREFIX if engine is Engine.MODERN else SCALDING_STEP_PREFIX
    return DistributedJobStep(
        name=f"{prefix}: {name}",
        jar=jar,
        main_class=f"{JAVA_PACKAGE}.{main_class}",
        engine=engine,
        job_arguments=arguments,
    )


def _hadoop_jar_step(step: Step, legacy_ami: bool) -> dict[str, Any]:
    if step.kind is StepKind.COPY:
        if legacy_ami:
            return {"Jar": LEGACY_S3DISTCP_JAR, "Args": step.arguments}
        return {"Jar": COMMAND_RUNNER_JAR, "Args": ["s3-dist-cp", *step.arguments]}

    if step.kind is StepKind.CUSTOM_BINARY:
        return {"Jar": step.jar, "Args": step.arguments}

    if step.engine is Engine.MODERN:
        spark_args: list[str] = ["spark-submit", "--class", step.main_class]
        for key, value in SPARK_ARGUMENTS.items():
            spark_args += [f"--{key}", value]
        return {"Jar": COMMAND_RUNNER_JAR, "Args": [*spark_args, step.jar, *step.arguments]}
    return {"Jar": step.jar, "Args": [step.main_class, "--hdfs", *step.arguments]}


def to_emr_step(step: Step, *, legacy_ami: bool = False, action_on_failure: str = ACTION_ON_FAILURE) -> dict[str, Any]:
    """Serialize a step into an ``emr.run_job_flow`` / ``add_job_flow_steps`` entry."""
    return {
        "Name": step.name,
        "ActionOnFailure": action_on_failure,
        "HadoopJarStep": _hadoop_jar_step(step, legacy_ami),
    }


def step_to_dict(step: Step) -> dict[str, Any]:
    """Flat, JSON-friendly description of a step (used for plan manifests)."""
    record: dict[str, Any] = {"kind": step.kind.value, "name": step.name, "arguments": step.arguments}
    if isinstance(step, CopyStep):
        record.update(src=step.src, dest=step.dest)
    elif isinstance(step, CustomBinaryStep):
        record.update(jar=step.jar)
    else:
        record.update(jar=step.jar, main_class=step.main_class, engine=step.engine.value)
    return record
