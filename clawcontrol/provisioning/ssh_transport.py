"""Argument builders for the system ``ssh`` binary (tunnels, terminal hand-off)."""

DEFAULT_USER = "root"


def ssh_base_args(server, ssh_key, ssh_port=22, alive_interval=15, alive_count=3):
    """Build base SSH arguments.

    Host keys are not checked: every deployment gets a fresh VM whose key
    is unknown in advance.
    """
    args = [
        "ssh",
        "-o", "StrictHostKeyChecking=no",
        "-o", "UserKnownHostsFile=/dev/null",
        "-o", "LogLevel=ERROR",
        "-o", f"ServerAliveInterval={alive_interval}",
        "-o", f"ServerAliveCountMax={alive_count}",
    ]
    if ssh_key:
        args += ["-i", ssh_key]
    if ssh_port and ssh_port != 22:
        args += ["-p", str(ssh_port)]
    args.append(server)
    return args


def forward_args(server, ssh_key, local_port, remote_port, remote_host="127.0.0.1", ssh_port=22):
    """Build args for a ``-N -L`` local port-forward that exits if binding fails."""
    args = ssh_base_args(server, ssh_key, ssh_port)
    target = args.pop()
    args[1:1] = [
        "-N",
        "-L", f"{local_port}:{remote_host}:{remote_port}",
        "-o", "ExitOnForwardFailure=yes",
    ]
    args.append(target)
    return args


def interactive_args(server, ssh_key, remote_command=None, ssh_port=22):
    """Build args for a human-driven session (``-t`` forces a TTY for *remote_command*)."""
    args = ssh_base_args(server, ssh_key, ssh_port)
    if remote_command:
        args.insert(-1, "-t")
        args.append(remote_command)
    return args
