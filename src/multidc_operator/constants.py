"""API groups, annotation keys and fixed names shared across the operator."""

API_GROUP = "multidc.k8ssandra.io"
API_VERSION = "v1alpha1"
CLUSTER_PLURAL = "multidcclusters"

FINALIZER = f"{API_GROUP}/finalizer"

CLUSTER_LABEL = f"{API_GROUP}/cluster"
CLUSTER_NAMESPACE_LABEL = f"{API_GROUP}/cluster-namespace"
REPLICATED_BY_LABEL = f"{API_GROUP}/replicated-by"

RESOURCE_HASH_ANNOTATION = f"{API_GROUP}/resource-hash"
REBUILD_ANNOTATION = f"{API_GROUP}/rebuild"
REBUILD_MARKED = "true"
REBUILD_COMPLETED = "completed"
SECRET_HASH_ANNOTATION_PREFIX = f"{API_GROUP}/secret-hash-"

MEDUSA_GRPC_PORT = 50051
