"""Project export as the YAML document consumed by the GitHub sync pipeline.

Workflows, jobs and credentials are keyed by their hyphenated names; edges
by ``source->target``.  Keys inside each node keep a fixed order.
"""

from __future__ import annotations

from typing import Any, Optional

import yaml

from flowdesk.types import Credential, EdgeCondition, Project, ProjectCredential, TriggerType, Workflow


def hyphenate(value: Optional[str]) -> str:
    return (value or "").replace(" ", "-")


class _ExportDumper(yaml.SafeDumper):
    pass


def _represent_str(dumper: yaml.SafeDumper, value: str) -> yaml.ScalarNode:
    style = "|" if "\n" in value else None
    return dumper.represent_scalar("tag:yaml.org,2002:str", value, style=style)


_ExportDumper.add_representer(str, _represent_str)


def credential_key(credential: Credential, owner: str) -> str:
    return hyphenate(f"{owner} {credential.name}")


def _job_node(job, credential_keys: dict[str, str]) -> dict[str, Any]:
    node: dict[str, Any] = {"name": job.name, "adaptor": job.adaptor}
    if job.project_credential_id in credential_keys:
        node["credential"] = credential_keys[job.project_credential_id]
    node["body"] = job.body
    return node


def _trigger_node(trigger) -> dict[str, Any]:
    node: dict[str, Any] = {"type": trigger.type.value}
    if trigger.type == TriggerType.CRON:
        node["cron_expression"] = trigger.cron_expression
    node["enabled"] = trigger.enabled
    return node


def _edge_entry(edge, workflow: Workflow) -> Optional[tuple[str, dict[str, Any]]]:
    target = workflow.job(edge.target_job_id) if edge.target_job_id else None
    if target is None:
        return None
    node: dict[str, Any] = {}
    if edge.source_trigger_id:
        trigger = workflow.trigger(edge.source_trigger_id)
        if trigger is None:
            return None
        source = trigger.type.value
        node["source_trigger"] = source
    else:
        job = workflow.job(edge.source_job_id) if edge.source_job_id else None
        if job is None:
            return None
        source = hyphenate(job.name)
        node["source_job"] = source
    node["target_job"] = hyphenate(target.name)
    node["condition_type"] = edge.condition_type.value
    if edge.condition_type == EdgeCondition.JS_EXPRESSION:
        node["condition_label"] = edge.condition_label
        node["condition_expression"] = edge.condition_expression
    node["enabled"] = edge.enabled
    return f"{source}->{hyphenate(target.name)}", node


def build_tree(
    project: Project,
    workflows: list[Workflow],
    credentials: Optional[list[tuple[ProjectCredential, Credential]]] = None,
    owners: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    """Nested dict for *project*.  ``owners`` maps user ids to emails."""
    owners = owners or {}
    credentials_tree: dict[str, Any] = {}
    credential_keys: dict[str, str] = {}
    for project_credential, credential in credentials or []:
        owner = owners.get(credential.user_id, credential.user_id)
        key = credential_key(credential, owner)
        credential_keys[project_credential.id] = key
        credentials_tree[key] = {"name": credential.name, "owner": owner}

    workflows_tree: dict[str, Any] = {}
    for workflow in sorted(workflows, key=lambda w: w.inserted_at):
        edges: dict[str, Any] = {}
        for edge in workflow.edges:
            entry = _edge_entry(edge, workflow)
            if entry is not None:
                edges[entry[0]] = entry[1]
        workflows_tree[hyphenate(workflow.name)] = {
            "name": workflow.name,
            "jobs": {hyphenate(j.name): _job_node(j, credential_keys) for j in workflow.jobs},
            "triggers": {t.type.value: _trigger_node(t) for t in workflow.triggers},
            "edges": edges,
        }

    return {
        "name": project.name,
        "description": project.description or None,
        "credentials": credentials_tree or None,
        "workflows": workflows_tree,
    }


def export_project_yaml(
    project: Project,
    workflows: list[Workflow],
    credentials: Optional[list[tuple[ProjectCredential, Credential]]] = None,
    owners: Optional[dict[str, str]] = None,
) -> str:
    return yaml.dump(
        build_tree(project, workflows, credentials, owners),
        Dumper=_ExportDumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )
