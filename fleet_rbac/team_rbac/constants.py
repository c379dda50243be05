INTEGRATION_NAME = "team-rbac"
CONTROLLER_NAME = "team-rbac-controller"

CLEANUP_FINALIZER = "greenhouse.sap/cleanup"
# comma separated names of the clusters bindings were propagated to
PROPAGATED_CLUSTERS_ANNOTATION = "greenhouse.sap/propagated-clusters"

LABEL_KEY_ROLE = "greenhouse.sap/role"
LABEL_KEY_ROLEBINDING = "greenhouse.sap/rolebinding"

RBAC_API_GROUP = "rbac.authorization.k8s.io"
RBAC_API_VERSION = f"{RBAC_API_GROUP}/v1"
CLUSTER_ROLE_KIND = "ClusterRole"
CLUSTER_ROLE_BINDING_KIND = "ClusterRoleBinding"
ROLE_BINDING_KIND = "RoleBinding"
GROUP_SUBJECT_KIND = "Group"

CLUSTER_ROLE_KIND_NAME = f"{CLUSTER_ROLE_KIND}.{RBAC_API_VERSION}"
CLUSTER_ROLE_BINDING_KIND_NAME = f"{CLUSTER_ROLE_BINDING_KIND}.{RBAC_API_VERSION}"
ROLE_BINDING_KIND_NAME = f"{ROLE_BINDING_KIND}.{RBAC_API_VERSION}"

# event reasons
ROLE_NOT_FOUND_REASON = "RoleNotFound"
TEAM_NOT_FOUND_REASON = "TeamNotFound"
CLUSTER_NOT_FOUND_REASON = "ClusterNotFound"
INVALID_CLUSTER_SELECTOR_REASON = "InvalidClusterSelector"
CLUSTER_CLIENT_ERROR_REASON = "ClusterClientError"
FAILED_RECONCILE_CLUSTER_ROLE_REASON = "FailedReconcileClusterRole"
FAILED_RECONCILE_CLUSTER_ROLE_BINDING_REASON = "FailedReconcileClusterRoleBinding"
FAILED_RECONCILE_ROLE_BINDING_REASON = "FailedReconcileRoleBinding"
FAILED_DELETE_CLUSTER_ROLE_BINDING_REASON = "FailedDeleteClusterRoleBinding"
FAILED_DELETE_ROLE_BINDING_REASON = "FailedDeleteRoleBinding"
CREATED_REASON = "Created"
UPDATED_REASON = "Updated"
DELETED_REASON = "Deleted"
