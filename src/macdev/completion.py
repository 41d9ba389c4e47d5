from __future__ import annotations

from .errors import MacdevError

SUPPORTED_SHELLS = ("bash", "zsh", "fish")

COMMANDS = (
    "init",
    "add",
    "remove",
    "install",
    "shell",
    "list",
    "sync",
    "gc",
    "check",
    "upgrade",
    "tap",
    "untap",
    "completion",
    "config",
    "help",
)

_BASH = """\
_macdev() {{
    local cur prev
    COMPREPLY=()
    cur="${{COMP_WORDS[COMP_CWORD]}}"
    prev="${{COMP_WORDS[COMP_CWORD-1]}}"

    if [[ ${{COMP_CWORD}} == 1 ]]; then
        COMPREPLY=( $(compgen -W "{commands}" -- "${{cur}}") )
        return 0
    fi

    case "${{prev}}" in
        completion)
            COMPREPLY=( $(compgen -W "{shells}" -- "${{cur}}") )
            ;;
        add)
            COMPREPLY=( $(compgen -W "--impure" -- "${{cur}}") )
            ;;
        gc)
            COMPREPLY=( $(compgen -W "--all" -- "${{cur}}") )
            ;;
        check)
            COMPREPLY=( $(compgen -W "--quiet" -- "${{cur}}") )
            ;;
    esac
}}
complete -F _macdev macdev
"""

_ZSH = """\
#compdef macdev

_macdev() {{
    local -a commands
    commands=({commands})

    if (( CURRENT == 2 )); then
        _describe 'command' commands
        return
    fi

    case "$words[2]" in
        completion) _values 'shell' {shells} ;;
        add) _arguments '--impure[install system-wide]' '*:package:' ;;
        gc) _arguments '--all[also uninstall pure packages]' ;;
        check) _arguments '--quiet[suppress output]' ;;
    esac
}}

_macdev "$@"
"""

_FISH_HEADER = """\
complete -c macdev -f
complete -c macdev -n '__fish_use_subcommand' -a '{commands}'
complete -c macdev -n '__fish_seen_subcommand_from completion' -a '{shells}'
complete -c macdev -n '__fish_seen_subcommand_from add' -l impure -d 'Install system-wide'
complete -c macdev -n '__fish_seen_subcommand_from gc' -l all -d 'Also uninstall pure packages'
complete -c macdev -n '__fish_seen_subcommand_from check' -l quiet -d 'Suppress output'
"""


def generate_completion(shell: str) -> str:
    commands = " ".join(COMMANDS)
    shells = " ".join(SUPPORTED_SHELLS)
    if shell == "bash":
        return _BASH.format(commands=commands, shells=shells)
    if shell == "zsh":
        return _ZSH.format(commands=commands, shells=shells)
    if shell == "fish":
        return _FISH_HEADER.format(commands=commands, shells=shells)
    raise MacdevError(f"Unsupported shell: {shell}. Supported shells: {', '.join(SUPPORTED_SHELLS)}")
