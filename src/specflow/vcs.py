from __future__ import annotations

import asyncio
import re
import shlex
import subprocess
from pathlib import Path
from typing import Any

from specflow.errors import SpecflowError, TransientError

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
PR_NUMBER_PATTERN = re.compile(r"/pull/(\d+)")
IGNORED_STATUS_PREFIXES = (".specflow/",)


class VersionControlError(SpecflowError):
    """A git or gh command exited non-zero."""


def _status_line_path(status_line: str) -> str:
    candidate = status_line[3:].strip()
    if " -> " in candidate:
        candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
    return candidate.strip('"')


class GitVersionControl:
    def __init__(self, repo_root: Path, *, remote: str = "origin") -> None:
        self.repo_root = repo_root
        self.remote = remote

    def _run(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            args,
            cwd=cwd or self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise VersionControlError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def _git(
        self, args: list[str], *, cwd: Path | None = None, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        return self._run(["git", "--no-pager", *args], cwd=cwd, check=check)

    def current_branch(self, cwd: Path | None = None) -> str:
        return self._git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd).stdout.strip()

    def dirty_paths(self, cwd: Path | None = None) -> list[str]:
        proc = self._git(["status", "--porcelain"], cwd=cwd)
        dirty: list[str] = []
        for line in proc.stdout.splitlines():
            if not line.strip():
                continue
            path = _status_line_path(line)
            if not path or path.startswith(IGNORED_STATUS_PREFIXES) or path == "specflow.toml":
                continue
            dirty.append(path)
        return dirty

    def create_branch(self, branch: str, cwd: Path | None = None) -> None:
        self._git(["checkout", "-b", branch], cwd=cwd)

    def create_worktree(self, branch: str, path: Path, base: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._git(["worktree", "add", "-b", branch, str(path), base])
        return path

    async def push(self, branch: str, cwd: Path | None = None) -> None:
        proc = await asyncio.to_thread(
            self._git, ["push", "-u", self.remote, branch], cwd=cwd, check=False
        )
        if proc.returncode != 0:
            raise TransientError(f"git push failed: {proc.stderr.strip() or proc.stdout.strip()}")

    async def create_pull_request(
        self,
        title: str,
        body: str,
        base: str,
        head: str,
        *,
        draft: bool = False,
        cwd: Path | None = None,
    ) -> dict[str, Any]:
        args = ["gh", "pr", "create", "--title", title, "--body", body, "--base", base, "--head", head]
        if draft:
            args.append("--draft")
        proc = await asyncio.to_thread(self._run, args, cwd=cwd, check=False)
        if proc.returncode != 0:
            raise TransientError(
                f"gh pr create failed: {proc.stderr.strip() or proc.stdout.strip()}"
            )
        url = proc.stdout.strip().splitlines()[-1] if proc.stdout.strip() else ""
        match = PR_NUMBER_PATTERN.search(url)
        if match is None:
            raise VersionControlError(f"Could not read pull request number from: {url!r}")
        return {"url": url, "number": int(match.group(1))}

    def comment_on_pull_request(self, number: int, body: str, *, cwd: Path | None = None) -> None:
        proc = self._run(["gh", "pr", "comment", str(number), "--body", body], cwd=cwd, check=False)
        if proc.returncode != 0:
            raise TransientError(
                f"gh pr comment failed: {proc.stderr.strip() or proc.stdout.strip()}"
            )


class ShellTestRunner:
    def __init__(self, command: str) -> None:
        self.command = command

    def _run_command(self, cwd: Path) -> dict[str, Any]:
        command_text = self.command.strip()
        if not command_text:
            return {"exit_code": 1, "stdout_tail": "", "stderr_tail": "Command is empty."}

        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        command_payload: str | list[str] = command_text
        if not used_shell:
            try:
                command_payload = shlex.split(command_text)
            except ValueError:
                used_shell = True
                command_payload = command_text

        try:
            proc = subprocess.run(
                command_payload,
                cwd=cwd,
                shell=used_shell,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            return {"exit_code": 127, "stdout_tail": "", "stderr_tail": str(exc)}
        return {
            "exit_code": proc.returncode,
            "stdout_tail": proc.stdout.strip()[-1000:],
            "stderr_tail": proc.stderr.strip()[-1000:],
        }

    async def run(self, cwd: Path) -> dict[str, Any]:
        return await asyncio.to_thread(self._run_command, cwd)
