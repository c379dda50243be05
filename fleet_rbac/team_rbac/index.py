from collections import defaultdict
from threading import Lock

from fleet_rbac.models import RoleBinding

ObjectKey = tuple[str, str]


class ReverseDependencyIndex:
    """
    Maps Roles and Teams back to the RoleBindings referencing them, so a
    change to a Role or Team can be turned into reconcile triggers for
    every dependent RoleBinding. References are namespace scoped: a Role
    `viewer` in namespace `a` is unrelated to a Role `viewer` in `b`.

    The index is fed by the RoleBinding watch and read by the Role, Team
    and Cluster watches, hence all access is serialized.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._refs: dict[ObjectKey, tuple[str, str]] = {}
        self._by_role: dict[ObjectKey, set[str]] = defaultdict(set)
        self._by_team: dict[ObjectKey, set[str]] = defaultdict(set)

    def __len__(self) -> int:
        with self._lock:
            return len(self._refs)

    def _remove(self, key: ObjectKey) -> None:
        refs = self._refs.pop(key, None)
        if refs is None:
            return
        namespace, name = key
        role_ref, team_ref = refs
        for index, ref in ((self._by_role, role_ref), (self._by_team, team_ref)):
            dependents = index.get((namespace, ref))
            if dependents is None:
                continue
            dependents.discard(name)
            if not dependents:
                del index[namespace, ref]

    def upsert(self, role_binding: RoleBinding) -> None:
        key = role_binding.key
        with self._lock:
            self._remove(key)
            self._refs[key] = (role_binding.spec.role_ref, role_binding.spec.team_ref)
            self._by_role[role_binding.namespace, role_binding.spec.role_ref].add(
                role_binding.name
            )
            self._by_team[role_binding.namespace, role_binding.spec.team_ref].add(
                role_binding.name
            )

    def remove(self, key: ObjectKey) -> None:
        with self._lock:
            self._remove(key)

    def dependents_of_role(self, namespace: str, name: str) -> list[ObjectKey]:
        with self._lock:
            dependents = self._by_role.get((namespace, name), ())
            return sorted((namespace, rb) for rb in dependents)

    def dependents_of_team(self, namespace: str, name: str) -> list[ObjectKey]:
        with self._lock:
            dependents = self._by_team.get((namespace, name), ())
            return sorted((namespace, rb) for rb in dependents)

    def all_in_namespace(self, namespace: str) -> list[ObjectKey]:
        with self._lock:
            return sorted(key for key in self._refs if key[0] == namespace)
