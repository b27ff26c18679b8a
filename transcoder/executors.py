"""
Ways of running the pipeline for one JobMessage. Both executors answer the
same question, "did the job succeed?", so the Celery task doesn't care
which one is configured.
"""

import logging
import os
import subprocess

from django.conf import settings

from .jobstore import JobStore
from .pipeline import PipelineConfig, TranscodePipeline
from .storage import ArtifactStore

logger = logging.getLogger(__name__)

SANDBOX_COMMAND = ["python", "manage.py", "run_transcode_job"]


def build_pipeline() -> TranscodePipeline:
    return TranscodePipeline(ArtifactStore.from_settings(), JobStore(), PipelineConfig.from_settings())


class InProcessExecutor:
    def __init__(self, pipeline_factory=build_pipeline):
        self.pipeline_factory = pipeline_factory

    def run(self, message) -> bool:
        outcome = self.pipeline_factory().run(message)
        return outcome.succeeded


class SandboxExecutor:
    """
    Runs the pipeline in a throwaway container:

        docker run --rm --name transcode-<job> --network <net> -e JOB_ID ... <image> \
            python manage.py run_transcode_job

    Exit code 0 means success. Values for `-e NAME` come from the child
    environment so secrets never appear in argv. A container that outlives
    `timeout`, or whose wait is interrupted, is force-removed.
    """

    def __init__(
        self,
        image: str,
        network: str,
        *,
        timeout: float | None = None,
        passthrough_env=(),
        docker_bin: str = "docker",
        run=subprocess.run,
    ):
        self.image = image
        self.network = network
        self.timeout = timeout
        self.passthrough_env = list(passthrough_env)
        self.docker_bin = docker_bin
        self._run = run

    @classmethod
    def from_settings(cls) -> "SandboxExecutor":
        return cls(
            settings.SANDBOX_IMAGE,
            settings.SANDBOX_NETWORK,
            timeout=settings.SANDBOX_TIMEOUT,
            passthrough_env=settings.SANDBOX_PASSTHROUGH_ENV,
            docker_bin=settings.DOCKER_BIN,
        )

    @staticmethod
    def container_name(message) -> str:
        return f"transcode-{message.job_id}"

    def sandbox_env(self, message) -> dict:
        env = {name: os.environ[name] for name in self.passthrough_env if name in os.environ}
        env.update(message.to_env())
        return env

    def command(self, message, env_names) -> list[str]:
        argv = [
            self.docker_bin, "run",
            "--rm",
            "--name", self.container_name(message),
            "--network", self.network,
        ]
        for name in sorted(env_names):
            argv += ["-e", name]
        return argv + [self.image, *SANDBOX_COMMAND]

    def run(self, message) -> bool:
        sandbox_env = self.sandbox_env(message)
        argv = self.command(message, sandbox_env)
        name = self.container_name(message)
        logger.info("Starting sandbox %s for job %s", name, message.job_id)

        finished = False
        try:
            proc = self._run(argv, env={**os.environ, **sandbox_env}, timeout=self.timeout, check=False)
            finished = True
        except subprocess.TimeoutExpired:
            logger.error("Sandbox %s exceeded %ss", name, self.timeout)
            return False
        except OSError as e:
            finished = True  # nothing was started
            logger.error("Could not start sandbox for job %s: %s", message.job_id, e)
            return False
        finally:
            if not finished:
                self.force_remove(name)

        if proc.returncode != 0:
            logger.error("Sandbox %s exited with code %s", name, proc.returncode)
            return False
        logger.info("Sandbox %s finished job %s", name, message.job_id)
        return True

    def force_remove(self, name: str):
        try:
            self._run([self.docker_bin, "rm", "-f", name], check=False, capture_output=True, timeout=60)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Could not remove sandbox %s: %s", name, e)


def get_executor():
    if settings.TRANSCODE_EXECUTION == "sandbox":
        return SandboxExecutor.from_settings()
    return InProcessExecutor()
