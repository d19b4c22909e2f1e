"""Parsing of bulk ``docker inspect --format`` output.

Each line carries tab-separated fields in fixed order::

    name  state  project-label  service-label  working-dir-label  [status-text]

Malformed lines are skipped rather than raised: a host with a few odd
containers still yields everything that could be understood.
"""

from __future__ import annotations

import re

from dockreach.discovery.models import ContainerRecord
from dockreach.logger import logger

PROJECT_LABEL = "com.docker.compose.project"
SERVICE_LABEL = "com.docker.compose.service"
WORKING_DIR_LABEL = "com.docker.compose.project.working_dir"

INSPECT_FORMAT = "\t".join(
    [
        "{{.Name}}",
        "{{.State.Status}}",
        f'{{{{index .Config.Labels "{PROJECT_LABEL}"}}}}',
        f'{{{{index .Config.Labels "{SERVICE_LABEL}"}}}}',
        f'{{{{index .Config.Labels "{WORKING_DIR_LABEL}"}}}}',
        '{{if eq .State.Status "exited"}}Exited ({{.State.ExitCode}}){{end}}',
    ]
)

_EXIT_CODE_RE = re.compile(r"Exited \((\d+)\)")


def parse_inspect_line(line: str) -> ContainerRecord | None:
    if not line.strip():
        return None
    fields = [f.strip() for f in line.split("\t")]
    fields += [""] * (6 - len(fields))
    name, state, project, service, working_dir, status_text = fields[:6]
    name = name.removeprefix("/")
    if not name or not project:
        logger.debug("Skipping inspect line without name or project label", line=line)
        return None
    return ContainerRecord(
        name=name,
        state=state,
        project=project,
        service=service,
        working_dir=working_dir,
        status_text=status_text,
    )


def parse_inspect_output(text: str) -> list[ContainerRecord]:
    records = []
    for line in text.splitlines():
        record = parse_inspect_line(line)
        if record is not None:
            records.append(record)
    return records


def extract_exit_code(status_text: str) -> int | None:
    match = _EXIT_CODE_RE.search(status_text or "")
    return int(match.group(1)) if match else None
