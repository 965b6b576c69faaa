"""Leader-side composition of sessions, state stores and monitors."""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .agents.binaries import BinaryResolver
from .agents.contracts import WorkerLaunchConfig, build_worker_argv, get_worker_env
from .agents.runner import AgentRunner, AgentRunResult
from .config import CrewSettings, get_settings
from .errors import CrewError
from .monitor.health import HealthIntervention, HealthMonitor, WorkerHealthReport
from .monitor.status import TeamStatus, TeamStatusAggregator
from .profiles import ProfileLoader
from .storage.audit import WORKER_SHUTDOWN, WORKER_SPAWNED, AuditLog
from .storage.heartbeat import HeartbeatStore
from .storage.mailbox import Mailbox
from .storage.models import MailboxMessage, TaskRecord, WorkerMember
from .storage.registry import WorkerRegistry
from .storage.tasks import TaskQueue
from .tmux.client import TmuxClient
from .tmux.layout import LayoutStabilizer
from .tmux.session import PaneLaunchSpec, SessionManager

logger = logging.getLogger(__name__)

LEADER_NAME = "leader"


def configure_logging(level: str) -> None:
    """Configure root logging for the leader process."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


class TeamLeader:
    """Spawns workers into tmux sessions and coordinates them through files."""

    def __init__(
        self,
        settings: CrewSettings,
        *,
        sessions: SessionManager,
        resolver: BinaryResolver,
        runner: AgentRunner | None = None,
        profiles: ProfileLoader | None = None,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.resolver = resolver
        self.runner = runner or AgentRunner(resolver, default_timeout_s=settings.task_timeout_s)
        self.profiles = profiles or ProfileLoader(settings.profile_paths)

        state_dir = Path(settings.state_dir)
        self.registry = WorkerRegistry(state_dir)
        self.heartbeats = HeartbeatStore(state_dir)
        self.tasks = TaskQueue(state_dir)
        self.mailbox = Mailbox(state_dir)
        self.audit = AuditLog(state_dir)
        self.health = HealthMonitor(
            self.heartbeats,
            self.audit,
            self.registry,
            sessions,
            at_risk_errors=settings.at_risk_error_threshold,
        )
        self.status = TeamStatusAggregator(self.registry, self.heartbeats, self.tasks, self.mailbox)
        self._layout: LayoutStabilizer | None = None

    # -- layout -------------------------------------------------------------------

    @property
    def layout(self) -> LayoutStabilizer | None:
        return self._layout

    def attach_layout(self, session_target: str, leader_pane_id: str) -> LayoutStabilizer:
        """Keep the leader's window tiled as workers come and go."""

        if self._layout is not None:
            self._layout.dispose()
        self._layout = LayoutStabilizer(
            self.sessions.client,
            session_target,
            leader_pane_id,
            debounce_ms=self.settings.layout_debounce_ms,
        )
        return self._layout

    def _request_layout(self) -> None:
        if self._layout is not None:
            self._layout.request_layout()

    # -- workers ------------------------------------------------------------------

    async def spawn_worker(
        self,
        team: str,
        worker: str,
        agent_type: str,
        *,
        model: str | None = None,
        cwd: str | None = None,
        extra_flags: Sequence[str] | None = None,
        wait_for_shell: bool = True,
    ) -> WorkerMember:
        """Create a session for ``worker`` and launch its agent CLI inside it."""

        config = WorkerLaunchConfig(
            team_name=team,
            worker_name=worker,
            cwd=cwd,
            model=model,
            extra_flags=list(extra_flags or []),
        )
        argv = build_worker_argv(agent_type, config, self.resolver)
        env = get_worker_env(team, worker, agent_type)
        self.registry.ensure_available(team, worker)

        session = self.sessions.create_session(team, worker, cwd)
        try:
            await self.sessions.spawn_worker_in_pane(
                session.pane_id,
                PaneLaunchSpec(argv=argv, env=env, cwd=cwd),
                wait_for_shell=wait_for_shell,
                shell_ready_timeout_ms=self.settings.shell_ready_timeout_ms,
            )
        except BaseException:
            logger.warning(
                "Worker launch failed, killing its session",
                extra={"team": team, "worker": worker, "session": session.session_name},
            )
            try:
                self.sessions.kill_session(team, worker)
            except CrewError as exc:
                logger.warning(
                    "Could not kill session after failed launch",
                    extra={"session": session.session_name, "error": str(exc)},
                )
            raise

        member = WorkerMember(
            name=worker,
            team_name=team,
            agent_type=agent_type,
            model=model,
            session_name=session.session_name,
            pane_id=session.pane_id,
            cwd=cwd,
        )
        self.registry.register(member)
        self.audit.record(
            team,
            worker,
            WORKER_SPAWNED,
            details={"agentType": agent_type, "model": model, "session": session.session_name},
        )
        logger.info(
            "Spawned worker",
            extra={"team": team, "worker": worker, "agent_type": agent_type, "session": session.session_name},
        )
        self._request_layout()
        return member

    async def spawn_from_profile(
        self, team: str, worker: str, profile_id: str, *, cwd: str | None = None
    ) -> WorkerMember:
        profile = self.profiles.get(profile_id)
        return await self.spawn_worker(
            team,
            worker,
            profile.agent_type,
            model=profile.model,
            cwd=cwd,
            extra_flags=profile.extra_flags,
        )

    def shutdown_worker(self, team: str, worker: str, *, reason: str = "shutdown requested") -> bool:
        """Signal ``worker`` to stop, kill its session and forget it.

        Returns ``False`` if no session was killed, which includes the case
        where the worker's session is the leader's own.
        """

        self.mailbox.write_shutdown_signal(team, worker, uuid.uuid4().hex, reason)
        killed = self.sessions.kill_session(team, worker)
        self.registry.unregister(team, worker)
        if killed:
            self.mailbox.cleanup_worker_files(team, worker)
        self.audit.record(team, worker, WORKER_SHUTDOWN, details={"reason": reason, "killed": killed})
        self._request_layout()
        return killed

    # -- tasks and messages -------------------------------------------------------

    def assign_task(
        self,
        team: str,
        task_id: str,
        subject: str,
        *,
        description: str = "",
        owner: str | None = None,
        blocked_by: list[str] | None = None,
    ) -> TaskRecord:
        task = self.tasks.create_task(
            team, task_id, subject, description=description, owner=owner, blocked_by=blocked_by
        )
        if owner:
            self.mailbox.send_inbox(
                team,
                owner,
                MailboxMessage(type="task_assigned", payload={"taskId": task_id, "subject": subject}),
            )
        return task

    def send_message(self, team: str, worker: str, content: str) -> None:
        self.mailbox.send_inbox(
            team, worker, MailboxMessage(type="message", payload={"content": content, "from": LEADER_NAME})
        )

    def collect_messages(self, team: str) -> dict[str, list[MailboxMessage]]:
        return self.mailbox.read_all_team_outbox(team)

    # -- monitoring ---------------------------------------------------------------

    def team_status(self, team: str) -> TeamStatus:
        return self.status.get_team_status(team, self.settings.heartbeat_max_age_ms)

    def health_reports(self, team: str) -> list[WorkerHealthReport]:
        return self.health.get_worker_health_reports(team, self.settings.heartbeat_max_age_ms)

    def check_worker(self, team: str, worker: str) -> HealthIntervention | None:
        return self.health.check_worker_health(team, worker, self.settings.heartbeat_max_age_ms)

    async def run_agent(
        self,
        agent_type: str,
        prompt: str,
        *,
        model: str | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> AgentRunResult:
        """Run a one-shot agent outside tmux and return its parsed output."""

        return await self.runner.run(agent_type, prompt, model=model, cwd=cwd, env=env)

    def dispose(self) -> None:
        if self._layout is not None:
            self._layout.dispose()


def create_leader(
    settings: Optional[CrewSettings] = None,
    *,
    client: TmuxClient | None = None,
    env: Mapping[str, str] | None = None,
    runner: AgentRunner | None = None,
) -> TeamLeader:
    """Build a ``TeamLeader`` from settings, attaching layout when inside tmux."""

    settings = settings or get_settings()
    environ = env if env is not None else os.environ
    sessions = SessionManager(
        client or TmuxClient(timeout_s=settings.tmux_command_timeout_s),
        env=environ,
        shell_ready_timeout_ms=settings.shell_ready_timeout_ms,
    )
    resolver = BinaryResolver(settings.trusted_cli_dirs)
    leader = TeamLeader(settings, sessions=sessions, resolver=resolver, runner=runner)

    leader_pane = environ.get("TMUX_PANE")
    if leader_pane:
        session = sessions.current_session_name()
        if session:
            leader.attach_layout(session, leader_pane)
    return leader


__all__ = ["LEADER_NAME", "TeamLeader", "configure_logging", "create_leader"]
