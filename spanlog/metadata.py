"""Object metadata for log destinations and the registration calls behind it."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from spanlog.state import SessionState

GLOBAL_PROJECT = "Global"


class ObjectMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    full_info: dict[str, Any] = Field(default_factory=dict)


class OrgProjectMetadata(BaseModel):
    org_id: str | None = None
    project: ObjectMetadata


class ProjectExperimentMetadata(BaseModel):
    project: ObjectMetadata
    experiment: ObjectMetadata


class ProjectDatasetMetadata(BaseModel):
    project: ObjectMetadata
    dataset: ObjectMetadata


def _object_metadata(payload: dict[str, Any]) -> ObjectMetadata:
    return ObjectMetadata(id=payload["id"], name=payload.get("name", ""), full_info=payload)


async def compute_logger_metadata(
    state: SessionState,
    *,
    project_name: str | None = None,
    project_id: str | None = None,
) -> OrgProjectMetadata:
    """Resolve the project a log stream writes to, registering it if needed.

    This is the compute function referenced by span tokens that carry
    ``compute_object_metadata_args``, so both ends of a resumed trace resolve
    the same project id.
    """
    await state.login()
    org_id = state.org_id
    if not project_id:
        response = await state.app_conn().post_json(
            "api/project/register",
            {"project_name": project_name or GLOBAL_PROJECT, "org_id": org_id},
        )
        return OrgProjectMetadata(org_id=org_id, project=_object_metadata(response["project"]))
    if not project_name:
        response = await state.app_conn().get_json("api/project", {"id": project_id})
        return OrgProjectMetadata(
            org_id=org_id,
            project=ObjectMetadata(id=project_id, name=response.get("name", ""), full_info=response),
        )
    return OrgProjectMetadata(org_id=org_id, project=ObjectMetadata(id=project_id, name=project_name))


async def compute_experiment_metadata(
    state: SessionState,
    *,
    project_name: str | None = None,
    project_id: str | None = None,
    experiment_name: str | None = None,
    description: str | None = None,
    dataset_id: str | None = None,
    update: bool = False,
    metadata: dict[str, Any] | None = None,
) -> ProjectExperimentMetadata:
    await state.login()
    args: dict[str, Any] = {
        "project_name": project_name,
        "project_id": project_id,
        "org_id": state.org_id,
        "update": update,
    }
    if experiment_name is not None:
        args["experiment_name"] = experiment_name
    if description is not None:
        args["description"] = description
    if dataset_id is not None:
        args["dataset_id"] = dataset_id
    if metadata is not None:
        args["metadata"] = metadata
    response = await state.app_conn().post_json("api/experiment/register", args)
    return ProjectExperimentMetadata(
        project=_object_metadata(response["project"]),
        experiment=_object_metadata(response["experiment"]),
    )


async def compute_dataset_metadata(
    state: SessionState,
    *,
    project_name: str | None = None,
    project_id: str | None = None,
    dataset_name: str | None = None,
    description: str | None = None,
) -> ProjectDatasetMetadata:
    await state.login()
    args: dict[str, Any] = {
        "project_name": project_name,
        "project_id": project_id,
        "org_id": state.org_id,
    }
    if dataset_name is not None:
        args["dataset_name"] = dataset_name
    if description is not None:
        args["description"] = description
    response = await state.app_conn().post_json("api/dataset/register", args)
    return ProjectDatasetMetadata(
        project=_object_metadata(response["project"]),
        dataset=_object_metadata(response["dataset"]),
    )
