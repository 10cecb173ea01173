# buildxkit

Building blocks for tools that manage container image builders.

- **`buildxkit.store`**: a file-backed store of builder instances. A builder
  instance is a `NodeGroup` made of `Node`s. `Store.txn()` is a context
  manager that holds a file lock and yields a `Txn`. A `Txn` can list, load,
  save and remove node groups. It also records the current builder for each
  endpoint key, as a global selection or as a per-key default.
  `validate_name` checks names and lower-cases them.
- **`buildxkit.buildflags`**: parsers for the CSV-style values of build flags:
  - `parse_cache_entry`
  - `parse_outputs`, which opens destination files for `tar`/`oci`/`docker`
  - `parse_secret` and `parse_secret_specs`
  - `parse_ssh` and `parse_ssh_specs`
  - `parse_entitlements`
- **`buildxkit.platformutil`**: the `Platform` dataclass and `os/arch[/variant]`
  helpers: `parse`, `parse_platform`, `normalize`, `dedupe`,
  `format_platform`, `format_list`, `format_in_groups` and `default_spec`.
- **`buildxkit.confutil`**:
  - `config_dir` returns `$BUILDX_CONFIG`, or the `buildx` directory next to a
    Docker config file.
  - `default_config_file` finds `buildkitd.default.toml` in that directory.
  - `load_config_files` reads a BuildKit TOML config and the registry
    certificates it names. It rewrites their paths to locations under
    `/etc/buildkit`.
- **`buildxkit.waitmap`**: `WaitMap`, a map whose `get` blocks until every
  requested key has been set. It raises `TimeoutError` when its timeout runs
  out.
- **`buildxkit.logutil`**:
  - `new_filter` builds a `logging.Filter` that drops messages containing
    given strings.
  - `Formatter` prints records as `LEVEL: message`.
  - `pause` holds back a logger's stream output until the callable it returns
    is called.
- **`buildxkit.progress`**: progress records (`Vertex`, `VertexStatus`,
  `VertexLog`, `SolveStatus`) and helpers that report a step's start, end and
  error to a progress writer:
  - `write`, `from_reader`, `wrap` and `SubLogger`
  - the writer wrappers `with_prefix` and `reset_time`
  - `new_channel`
- **`buildxkit.monitor`**:
  - synchronous in-process pipes (`pipe`, `io_set_pipe`)
  - `MuxIO`, which routes one stream set to one of several outputs and
    switches to the next enabled output on `Ctrl-a c`
  - `IOForwarder`, which relays a stream set to a destination that can be
    replaced at any time

## Installation

```
pip install buildxkit
```

## Examples

### Managing builder instances

```python
from buildxkit.store import NodeGroup, Store

store = Store("/tmp/buildx-config")
with store.txn() as txn:
    ng = NodeGroup(name="mybuilder", driver="docker-container")
    ng.update("mybuilder0", "unix:///var/run/docker.sock", ["linux/amd64"],
              True, False, None, "", None)
    txn.save(ng)
    txn.set_current("default", "mybuilder", False, True)
    print(txn.current("default").name)   # mybuilder
```

`Txn.node_group_by_name` raises `FileNotFoundError` for a builder that is not
saved. An invalid name raises `ValueError`.

### Parsing build flags

```python
from buildxkit.buildflags import parse_cache_entry, parse_outputs, parse_secret

parse_cache_entry(["type=registry,ref=example.com/app:cache"])
parse_outputs(["type=local,dest=./out"])
parse_secret("id=mysecret,src=./secret.txt")
```

### Platforms

```python
from buildxkit.platformutil import parse, format_list

format_list(parse(["linux/amd64,linux/arm64", "linux/arm"]))
# ['linux/amd64', 'linux/arm64', 'linux/arm/v7']
```

### Waiting for values

```python
from buildxkit.waitmap import WaitMap

m = WaitMap()
m.set("foo", "bar")
m.get("foo", timeout=1.0)   # {'foo': 'bar'}
```

## What this package does not do

This is a library, not a command-line tool, and it installs no commands.

It does not talk to builders, container engines or image registries. It
starts no containers, and it has no progress display of its own. Those jobs
are left to the program that uses it:

- `MuxIO` and `IOForwarder` only move bytes between the stream sets they are
  given.
- The `progress` helpers hand records to whatever writer they are given.

## Running the tests

```
pip install -e .[test]
pytest
```