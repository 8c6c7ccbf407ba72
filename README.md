# kubesentry

Building blocks for an in-cluster security operator: loading the operator's
configuration, watching cluster resources and turning changes into scan
commands, evaluating admission requests against bound rules, and exporting
the resulting alerts over HTTP.

The package uses only the standard library.

## Configuration

`kubesentry.config` reads the operator's JSON configuration files.

```python
from kubesentry.config import (
    Credentials,
    OperatorConfig,
    load_capabilities_config,
    load_cluster_config,
    load_config,
    validate_config,
)

capabilities = load_capabilities_config("/etc/config")   # capabilities.json
service_config = load_config("/etc/config")              # config.json, with defaults
cluster = load_cluster_config()                           # $CONFIG or /etc/config/clusterData.json

operator_config = OperatorConfig(
    capabilities, cluster, Credentials(account="my-account"), "", service_config
)
validate_config(operator_config)
```

Keys are matched case-insensitively, and a non-empty environment variable
named after a key (upper-cased, for example `NAMESPACE` or `PORT`) overrides
the value from the file for keys that the file or the defaults define.

`load_config` fills in these defaults: namespace `kubescape`, port `4002`,
a ten-minute clean-up delay, three workers, `triggerSecurityFramework` off,
matching rules at `/etc/config/matchingRules.json`, two-minute event
de-duplication and a one-hour pod scan guard time. Durations such as `"60s"`
or `"1h30m"`, or a count of nanoseconds, are read with `parse_duration`.
Unreadable or undecodable files raise `ConfigError`.

`validate_config` raises `ConfigError` when the cluster name is missing, or
when service discovery is enabled without an account id.
`OperatorConfig.continuous_scan_enabled()` and
`admission_controller_enabled()` are true when the matching capability is
`"enable"`. `OperatorConfig.skip_namespace(ns)` uses the include list when it
is non-empty (anything not in it is skipped) and otherwise skips namespaces on
the exclude list.

## Continuous scanning

Matching rules say which resources to watch:

```json
{
  "match": [
    {"apiGroups": [""], "apiVersions": ["v1"], "resources": ["pods"]}
  ],
  "namespaces": ["default"]
}
```

```python
from kubesentry.matching import FileFetcher, TargetLoader

with open("matchingRules.json") as stream:
    gvrs = TargetLoader(FileFetcher(stream)).load_gvrs()
```

Every combination of group, version and resource in a rule becomes a
`GroupVersionResource`, in rule order (`match_rule_to_gvrs`). A JSON `null`
document yields no resources. `GroupVersionResource.parse` reads the
`group/version, Resource=resource` form and raises `UnexpectedGVRStringError`
on anything else.

`kubesentry.watches` keeps one `SelfHealingWatch` per resource
(`new_watch_pool`, `WatchPool.run`), opening a new watch whenever the current
one closes and retrying when one cannot be opened. The client you pass must
provide `watch(gvr, namespace)` returning an object with a `result_chan`
queue (a `None` item means the watch closed) and a `stop()` method.
Namespaced resources are watched with namespace `""` (all namespaces);
cluster-wide kinds such as nodes, namespaces and cluster roles with `None`.

`kubesentry.handlers` turns `WatchEvent`s into work:

- `TriggeringHandler(dispatch, cluster_name)` builds a `ScanCommand` for
  added and modified objects and passes it to `dispatch`.
- `DeletedCleanerHandler(dispatch, cluster_name, storage_client)` calls
  `delete_workload_configuration_scan` and
  `delete_workload_configuration_scan_summary` on the storage client for
  deleted objects, then dispatches a scan command marked as a deletion.

Pods, ReplicaSets and Jobs that have owner references are left to their
owner and produce no command.

`kubesentry.service.ContinuousScanningService(client, loader, *handlers)`
ties these together: `launch()` starts the watches, waits until each is
ready and starts the dispatch thread; `add_event_handler(handler)` registers
another handler; `stop()` shuts everything down and waits for the dispatch
thread. An exception from one handler is logged and does not stop the others.

## Admission control

Two built-in rules ship in `kubesentry.builtin_rules`:

| ID    | Name         | Tag         | Fires on                 |
|-------|--------------|-------------|--------------------------|
| R2000 | Exec to pod  | exec        | `PodExecOptions`         |
| R2001 | Port forward | portforward | `PodPortForwardOptions`  |

Both look up the pod's controlling workload (`kubesentry.workloads`), which
needs a clientset offering `get_pod`, `get_replica_set` and `get_job`, each
taking a namespace and a name. `RuleCreator` builds rules by id, by name or
by tags; rule parameters are kept by `BaseRule.set_parameters` and
`get_parameters`.

`kubesentry.rulebinding.RuleBindingCache(client)` holds rule bindings of kind
`RuntimeRuleAlertBinding`, kept current through `add_handler`,
`modify_handler` and `delete_handler`. `list_rules_for_object(obj)` returns
the rules of every binding whose pod selector matches the object; bindings
with a namespace selector ask `client.list_namespaces(selector)`. Objects
without a namespace get every binding unless they carry the label
`includeClusterObjects: "false"`.

`kubesentry.validator.AdmissionValidator` runs the bound rules for a request;
the first failure is sent to the exporter and raised as a Forbidden
`StatusError`. `kubesentry.webhook.AdmissionWebhook(addr, cert_file,
key_file, validator)` serves `/health` and `/validate` over TLS,
`run(stop_event)` blocks until the event is set, and the server restarts
when the certificate or key file changes. Requests are always allowed: a
denial is only recorded for audit in the review response.

## Alert export

```python
from kubesentry.exporter import init_http_exporter

exporter = init_http_exporter({"url": "http://alerts.example.com"}, "my-cluster")
```

Alerts are posted as a `RuntimeAlerts` list to `<url>/v1/runtimealerts`.
The method defaults to POST (PUT is also accepted), the timeout to five
seconds and the limit to 100 alerts a minute. The first alert over the limit
in a minute is replaced by a single "Alert limit reached" alert; a missing
URL or another method raises `ExporterConfigError`.

## What is not included

There is no command that runs an operator end to end, and no Kubernetes API
client: the watch, storage, namespace and pod lookups are supplied by the
caller as plain objects with the methods named above. There is no REST API
for triggering actions, no websocket connection to a notification server and
no scheduling of scans beyond producing `ScanCommand`s for a dispatch
function.