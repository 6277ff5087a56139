# p2pgit

Share Git repositories with other people on your local network, without a
central server.

`p2pgit` keeps a list of the repositories you manage, announces the public
ones to peers on the LAN over UDP, and lets a peer fetch a repository as a Git
bundle over TCP. Messages between connected peers can be end-to-end encrypted
with public-key cryptography (PyNaCl). Reading history, listing branches,
checking them out and writing bundles is done by a repository backend written
in Python, so no Git installation is needed for those operations.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Command line

The package installs the `p2pgit` command:

```
p2pgit [--user NAME] [--store FILE] COMMAND ...
```

`--user` is your peer name (the host name by default). `--store` is the JSON
file holding the managed repository list; by default it is
`$XDG_CONFIG_HOME/P2PGitClient/<user>/managed_repositories.json`, with
`~/.config` used when `XDG_CONFIG_HOME` is not set.

| Command | What it does |
| --- | --- |
| `repos` | List managed repositories with visibility, origin, id and path. |
| `add PATH [--name NAME] [--public]` | Manage the git repository at `PATH` (private unless `--public`). The display name defaults to the directory name. |
| `remove APP_ID` | Remove a repository from the managed list (the files are left alone). |
| `visibility APP_ID {public,private}` | Change access; only the owner (`--user`) may do this. |
| `status REPO` | Show the path and the current branch. |
| `log REPO [--ref REF] [-n N]` | Show up to `N` commits (100 by default) from `REF`, or from HEAD. |
| `branches REPO` | List local and remote-tracking branches, marking the current one with `*`. Symbolic `.../HEAD` branches are left out. |
| `checkout REPO BRANCH` | Check out a local branch. A name containing `/` is treated as a remote-tracking branch and its history is shown instead. |
| `bundle REPO OUTPUT_DIR [--name NAME]` | Write a bundle of every reference into `OUTPUT_DIR`. |

`REPO` may be a managed repository's id, its display name, or a plain path.
Errors are printed to standard error and the command exits with status 1.

## Library use

### Reading a repository

```python
from p2pgit.git_backend import BranchType, GitBackend

backend = GitBackend()
backend.open_repository("/path/to/repo")

for commit in backend.get_commit_log(20, "main"):
    print(commit.sha, commit.author_name, commit.date, commit.summary)

print(backend.list_branches(BranchType.ALL))
print(backend.get_current_branch())

backend.checkout_branch("origin/feature")   # creates a local tracking branch
backend.close_repository()
```

Failures raise `p2pgit.gitobjects.GitError`.

- `open_repository` accepts a working directory with a `.git` directory or
  gitfile, or a bare repository; `initialize_repository` creates a new one.
- `get_commit_log(max_commits, ref)` accepts a local branch (`main`), a
  remote-tracking branch (`origin/main`), a full reference name, `HEAD`, or a
  40-character commit SHA; an empty `ref` means HEAD. Commits come newest
  first, never a parent before its children. A `max_commits` of 0 or less
  means no limit. An unborn HEAD gives an empty list.
- `get_current_branch` returns the short branch name,
  `[Detached HEAD @ <sha prefix>]`, or `[Detached HEAD / Unborn]`.
- `checkout_branch` moves HEAD and updates the working tree and index; it
  refuses, raising `GitError`, when local changes would be overwritten. For a
  remote-tracking branch it switches to, or creates, a local branch of the
  same short name and records the upstream in the repository config.
- `create_bundle(output_dir, bundle_name_suggestion)` writes a version 2
  `.bundle` file containing HEAD and every reference, and returns its path.
  Characters other than letters, digits, `_`, `.` and `-` are removed from
  the suggested name.

The lower-level `ObjectStore` (loose objects and pack files) and `RefStore`
(loose and packed references), together with `parse_commit` and
`parse_tree`, are in `p2pgit.gitobjects`.

### Managing repositories

`RepositoryManager` keeps the managed list in a JSON file, loads it on
creation and saves it after every change. An optional callback is called
whenever the list changes:

```python
from p2pgit.repository_manager import RepositoryManager

manager = RepositoryManager("managed_repositories.json", None)
manager.add_managed_repository("/path/to/repo", "my-project", True, "alice", "")
for repo in manager.all_repositories():
    print(repo.app_id, repo.display_name, repo.is_public, repo.local_path)
```

Adding a path that is already managed returns `False`. A repository can be
made private with `set_repository_visibility`, and individual peers can be
given access with `add_collaborator`. `publicly_shared_repositories(peer)`
returns the public repositories plus those shared with `peer`;
`private_repositories(peer)` returns the private ones that peer owns.

### Networking

`p2pgit.network_manager.NetworkManager` runs on asyncio: a TCP server,
outgoing connections, UDP discovery broadcasts and bundle transfer. Events
are reported through `Signal` objects (`connect(callback)`):

```python
import asyncio

from nacl.public import PrivateKey

from p2pgit.network_manager import NetworkManager
from p2pgit.repository_manager import RepositoryManager


async def run():
    identity = PrivateKey.generate()
    repos = RepositoryManager("managed_repositories.json", None)
    net = NetworkManager("alice", bytes(identity.public_key).hex(), bytes(identity), repos)
    net.lan_peer_discovered_or_updated.connect(
        lambda peer: print(peer.id, peer.address, peer.public_repo_names)
    )
    await net.start_tcp_server()
    await net.start_udp_discovery()
    await asyncio.sleep(30)
    net.stop_udp_discovery()
    net.stop_tcp_server()


asyncio.run(run())
```

- Discovery announces your name, TCP port, public key and public repository
  names every five seconds on UDP port 45454 (broadcasts are only sent while
  the TCP server is listening). Peers are kept by a
  `p2pgit.discovery.PeerDirectory` and dropped after fifteen seconds of
  silence; `discovered_peers()` and `discovered_peer(id)` return them.
- `connect_to_tcp_peer` exchanges identities; `new_tcp_peer_connected` and
  `tcp_peer_disconnected` report peers coming and going.
- An incoming connection that does not start with a bundle request stays
  pending and `incoming_tcp_connection_request` is emitted; accept it with
  `accept_pending_tcp_connection` or reject it with
  `reject_pending_tcp_connection`. It is rejected automatically after thirty
  seconds.
- `broadcast_tcp_message` sends a chat message to every connected peer;
  received ones arrive through `tcp_message_received`.
- `send_encrypted_message(connection, message_type, payload)` encrypts a
  JSON-serialisable dictionary for that peer; the receiver gets it through
  `secure_message_received(peer_id, message_type, payload)`.
- `connect_and_request_bundle` asks a peer for a repository. On the serving
  side `repo_bundle_requested_by_peer` is emitted only for public
  repositories or for collaborators; the application then creates the bundle
  (for example with `GitBackend.create_bundle`) and passes it to
  `start_sending_bundle`, which deletes the file afterwards. The receiver
  gets `repo_bundle_chunk_received` progress and finally
  `repo_bundle_completed(repo_name, temp_path, success, message)`.

The wire format is produced and read by `StreamWriter` and `StreamReader` in
`p2pgit.datastream`.

## What it does not do

- There is no graphical interface, and the `p2pgit` command does not start
  networking: discovery, connections, chat and bundle transfer are available
  only through `NetworkManager` in your own asyncio program.
- Key pairs are not generated or stored by the package; you supply the public
  key (as hex) and secret key to `NetworkManager`.
- A received bundle is left as a temporary file; the package does not clone
  a repository from it.
- The repository backend reads history, lists branches, checks out, and
  writes bundles. It does not commit, merge, fetch or push.