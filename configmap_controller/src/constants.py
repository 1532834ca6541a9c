from __future__ import annotations

CONTROLLER_NAME = "configmap-controller"

# ConfigMaps opt in to restarts with this label.
RESTART_LABEL_KEY = "configrestart/deployment"
RESTART_LABEL_VALUE = "enable"

# Set on the ConfigMap used by the legacy ConfigMap-based leader lock.
LEADER_ANNOTATION = "control-plane.alpha.kubernetes.io/leader"

RESTART_ANNOTATION = "configmap-controller/restart"
FIELD_MANAGER = "configmap-controller"

DEFAULT_LEADER_ELECTION_ID = "241011712.some-controll.cn"
