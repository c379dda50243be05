"""Data models for the custom resources read from the central cluster."""

from typing import (
    Any,
    ClassVar,
    Self,
)

from pydantic import (
    BaseModel,
    Field,
)

GREENHOUSE_API_VERSION = "greenhouse.sap/v1alpha1"
EXTENSIONS_API_VERSION = "extensions.greenhouse.sap/v1alpha1"


class K8sModel(BaseModel, validate_by_alias=True, validate_by_name=True):
    pass


class ObjectMeta(K8sModel):
    name: str
    namespace: str = ""
    uid: str | None = None
    resource_version: str | None = Field(None, alias="resourceVersion")
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: str | None = Field(None, alias="deletionTimestamp")


class K8sObject(K8sModel):
    """Base class for namespaced objects identified by namespace and name."""

    KIND_NAME: ClassVar[str]

    api_version: str = Field(alias="apiVersion")
    kind: str
    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> tuple[str, str]:
        return self.metadata.namespace, self.metadata.name

    @property
    def is_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @classmethod
    def from_k8s(cls, obj: dict[str, Any]) -> Self:
        return cls.model_validate(obj)

    def reference(self) -> dict[str, Any]:
        """The object as involvedObject of an event."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": {
                "name": self.metadata.name,
                "namespace": self.metadata.namespace,
                "uid": self.metadata.uid,
                "resourceVersion": self.metadata.resource_version,
            },
        }


class LabelSelectorRequirement(K8sModel):
    key: str
    operator: str
    values: list[str] = Field(default_factory=list)


class LabelSelector(K8sModel):
    match_labels: dict[str, str] = Field(default_factory=dict, alias="matchLabels")
    match_expressions: list[LabelSelectorRequirement] = Field(
        default_factory=list, alias="matchExpressions"
    )


class PolicyRule(K8sModel):
    api_groups: list[str] | None = Field(None, alias="apiGroups")
    resources: list[str] | None = None
    verbs: list[str]
    resource_names: list[str] | None = Field(None, alias="resourceNames")
    non_resource_urls: list[str] | None = Field(None, alias="nonResourceURLs")


class AggregationRule(K8sModel):
    cluster_role_selectors: list[LabelSelector] = Field(
        default_factory=list, alias="clusterRoleSelectors"
    )


class RoleSpec(K8sModel):
    rules: list[PolicyRule] = Field(default_factory=list)
    # carried over to the ClusterRole on the remote clusters
    labels: dict[str, str] = Field(default_factory=dict)
    aggregation_rule: AggregationRule | None = Field(None, alias="aggregationRule")


class Role(K8sObject):
    KIND_NAME: ClassVar[str] = f"Role.{EXTENSIONS_API_VERSION}"

    spec: RoleSpec = Field(default_factory=RoleSpec)


class TeamSpec(K8sModel):
    description: str = ""
    mapped_idp_group: str = Field("", alias="mappedIdPGroup")


class Team(K8sObject):
    KIND_NAME: ClassVar[str] = f"Team.{GREENHOUSE_API_VERSION}"

    spec: TeamSpec = Field(default_factory=TeamSpec)


class ClusterSelector(K8sModel):
    cluster_name: str = Field("", alias="clusterName")
    label_selector: LabelSelector | None = Field(None, alias="labelSelector")
    exclude_list: list[str] = Field(default_factory=list, alias="excludeList")


class RoleBindingSpec(K8sModel):
    role_ref: str = Field("", alias="roleRef")
    team_ref: str = Field("", alias="teamRef")
    cluster_selector: ClusterSelector = Field(
        default_factory=ClusterSelector, alias="clusterSelector"
    )
    namespaces: list[str] = Field(default_factory=list)


class RoleBinding(K8sObject):
    """
    The intent object: grants the Team's identity provider group the
    permissions of the Role on every selected cluster.
    """

    KIND_NAME: ClassVar[str] = f"RoleBinding.{EXTENSIONS_API_VERSION}"

    spec: RoleBindingSpec = Field(default_factory=RoleBindingSpec)

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers


class Cluster(K8sObject):
    KIND_NAME: ClassVar[str] = f"Cluster.{GREENHOUSE_API_VERSION}"
