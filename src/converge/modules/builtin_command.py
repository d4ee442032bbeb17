"""
Converge command and shell modules

Execute commands on the execution host.
"""

import shlex

from converge.modules.base import Module, ModuleResult, register_module


@register_module
class CommandModule(Module):
    """
    Execute a command on target hosts.

    Unlike shell, the command is not processed through a shell, so shell
    operators and variables won't work. ``creates`` / ``removes`` guards are
    checked by the engine before the module runs.
    """

    name = "command"
    required_args = []  # Either _raw_params, cmd or argv
    optional_args = {
        "chdir": None,
        "creates": None,
        "removes": None,
    }
    requires_connection = True
    use_shell = False

    def validate_args(self) -> str | None:
        if not any(k in self.args for k in ("_raw_params", "cmd", "argv")):
            return "Either free-form command or 'cmd' argument is required"
        return None

    def command_line(self) -> str:
        argv = self.args.get("argv")
        if argv:
            return " ".join(shlex.quote(str(a)) for a in argv)
        return str(self.args.get("_raw_params") or self.args.get("cmd", ""))

    async def run(self) -> ModuleResult:
        """Execute the command."""
        cmd = self.command_line()
        result = await self.connection.run(
            cmd,
            shell=self.use_shell,
            cwd=self.get_arg("chdir"),
        )
        return ModuleResult(
            changed=True,  # Commands always report changed
            rc=result.rc,
            stdout=result.stdout,
            stderr=result.stderr,
            failed=result.rc != 0,
            msg=f"non-zero return code: {result.rc}" if result.rc != 0 else "",
            results={"cmd": cmd},
        )


@register_module
class ShellModule(CommandModule):
    """Execute a command through the execution host's shell."""

    name = "shell"
    use_shell = True
