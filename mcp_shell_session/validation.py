"""Validation of caller-supplied command text before it reaches a session."""
import re
import shlex
from typing import List, Optional, Tuple

from .protocol import MARKER_PREFIX


class CommandValidator:
    """Rejects commands that would corrupt or take over a pooled session.

    A persistent session only stays usable if every command returns control
    to the shell so the status trailer can run. Commands that end the shell,
    replace it, or wait on a terminal UI never do.
    """

    # Programs that need a real terminal and never return on their own.
    FULL_SCREEN_PROGRAMS = frozenset({
        'vi', 'vim', 'nvim', 'nano', 'emacs', 'less', 'more', 'top', 'htop',
        'man', 'tmux', 'screen', 'watch',
    })

    SESSION_ENDING = frozenset({'exit', 'logout', 'exec'})

    _OPERATOR_CHARS = ';&|()<>\n'
    _REDIRECT_CHARS = frozenset('<>')

    @classmethod
    def validate_command(cls, command: str) -> Tuple[bool, Optional[str]]:
        if not command or not command.strip():
            return False, "Empty command"
        if '\x00' in command:
            return False, "Command contains a NUL byte"
        if MARKER_PREFIX in command:
            return False, f"Command may not contain the reserved marker {MARKER_PREFIX!r}"

        for words in cls._simple_commands(command):
            program = cls._program_of(words)
            if program is None:
                continue
            if program in cls.SESSION_ENDING:
                return False, f"'{program}' would end the pooled shell session"
            if program in cls.FULL_SCREEN_PROGRAMS:
                return False, f"'{program}' needs an interactive terminal and is not supported"
        return True, None

    @classmethod
    def _simple_commands(cls, command: str) -> List[List[str]]:
        """Words of each simple command, split on unquoted shell operators.

        Quoted text stays inside its word. Scanning stops at a heredoc
        operator, whose body is data, and at a quote that never closes.
        """
        lexer = shlex.shlex(command, posix=True, punctuation_chars=cls._OPERATOR_CHARS)
        lexer.whitespace = ' \t\r'
        lexer.whitespace_split = True
        # '#' is handled below so a comment cannot swallow the newline after it.
        lexer.commenters = ''

        segments: List[List[str]] = [[]]
        in_comment = redirect_target = False
        try:
            for token in lexer:
                is_operator = bool(token) and all(c in cls._OPERATOR_CHARS for c in token)
                if in_comment:
                    if is_operator and '\n' in token:
                        in_comment = False
                        segments.append([])
                    continue
                if not is_operator:
                    if redirect_target:
                        redirect_target = False
                    elif token.startswith('#'):
                        in_comment = True
                    else:
                        segments[-1].append(token)
                    continue
                if token.startswith('<<') and not token.startswith('<<<'):
                    break
                if '\n' in token or not cls._REDIRECT_CHARS.intersection(token):
                    segments.append([])
                    redirect_target = False
                else:
                    redirect_target = True
        except ValueError:
            # Unclosed quote: the words read so far are still checked.
            pass
        return [words for words in segments if words]

    @staticmethod
    def _program_of(words: List[str]) -> Optional[str]:
        """First word of a simple command, skipping sudo and env assignments."""
        for word in words:
            if '=' in word and not word.startswith('='):
                continue
            if word in ('sudo', 'command', 'nohup', 'time'):
                continue
            if word.startswith('-'):
                continue
            return word.rsplit('/', 1)[-1]
        return None


def requires_elevation(command: str) -> bool:
    """True when the command invokes sudo anywhere."""
    return re.search(r'(^|[\s;&|(])sudo(\s|$)', command) is not None


def command_type_key(command: str) -> str:
    """Leading token of a command, used as its metrics key."""
    parts = command.strip().split(None, 1)
    return parts[0] if parts else '<empty>'
