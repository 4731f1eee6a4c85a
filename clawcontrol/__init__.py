"""clawcontrol: provision and run OpenClaw servers with resumable deployments."""
