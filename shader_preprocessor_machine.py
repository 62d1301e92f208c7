import logging
import os
import re
import shutil
import subprocess
import tempfile
from typing import Callable, Dict, List, Optional, Set, Tuple, Union
from dataclasses import dataclass, field

log = logging.getLogger(__name__)


class PreprocessorError(Exception):
    pass


class FileNotFound(PreprocessorError):
    def __init__(self, name: str, path: str):
        super().__init__(f"file not found: {path}")
        self.name = name
        self.path = path


class FileNotValidUtf8(PreprocessorError):
    def __init__(self, name: str):
        super().__init__(f"file not valid utf-8: {name}")
        self.name = name


class UnknownDirective(PreprocessorError):
    def __init__(self, name: str):
        super().__init__(f"unknown directive: {name}")
        self.name = name


class IncludeIncorrectArgs(PreprocessorError):
    def __init__(self, directive: str = "#include"):
        super().__init__(f"incorrect arguments to {directive}")
        self.directive = directive


class MacroNoParenthesis(PreprocessorError):
    def __init__(self):
        super().__init__("macro must have parenthesis")


class MacroIncorrectArgs(PreprocessorError):
    def __init__(self, expected: int, got: int):
        super().__init__(f"macro expected {expected} arguments, got {got}")
        self.expected = expected
        self.got = got


class ShaderValidationError(Exception):
    pass


@dataclass(frozen=True)
class Value:
    text: str


@dataclass(frozen=True)
class Macro:
    params: List[str]
    body: str


Definition = Union[Value, Macro]
MacroTable = Dict[str, Definition]
Validator = Callable[[str], Optional[str]]


@dataclass
class PreprocessContext:
    """State shared by every file entered during one preprocess run."""
    macros: MacroTable = field(default_factory=dict)
    visited: Set[str] = field(default_factory=set)


# Word characters plus the common combining mark blocks.
_CONTINUE = r"[\w\u0300-\u036f\u1ab0-\u1aff\u1dc0-\u1dff\u20d0-\u20ff\ufe20-\ufe2f]"

# An underscore needs at least one more character to form an identifier.
_IDENT = r"(?:_" + _CONTINUE + r"+|[^\W\d_]" + _CONTINUE + r"*)"
_IDENT_RE = re.compile(_IDENT)

# Groups: macro name, comma separated parameters, body.
_DEFINE_MACRO_RE = re.compile(
    r"(" + _IDENT + r")\(([^\W\d]" + _CONTINUE + r"*(?:(?:,\s*)+[^\W\d]" + _CONTINUE + r"*)*(?:,\s*)*)\)\s+(.*)"
)

_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/")


def strip_comments(line: str, in_block_comment: bool) -> Tuple[str, bool]:
    """
    Remove comments from a logical line.

    Returns the remaining text and whether the line ends inside an unclosed
    block comment.
    """
    if in_block_comment:
        closing_idx = line.find("*/")
        if closing_idx == -1:
            return "", True
        line = line[closing_idx + 2:]

    match = _BLOCK_COMMENT_RE.search(line)
    while match:
        line = line[:match.start()] + line[match.end():]
        match = _BLOCK_COMMENT_RE.search(line)

    inline_idx = line.find("//")
    if inline_idx != -1:
        return line[:inline_idx], False

    opening_idx = line.find("/*")
    if opening_idx != -1:
        return line[:opening_idx], True
    return line, False


def _find_invocation_close(text: str, open_idx: int) -> Tuple[int, List[int]]:
    """Find the parenthesis closing the call at open_idx and its top-level commas."""
    depth = 0
    commas = []
    for idx in range(open_idx, len(text)):
        char = text[idx]
        if char in "({":
            depth += 1
        elif char in ")}":
            depth -= 1
            if depth == 0:
                return idx, commas
        elif char == "," and depth == 1:
            commas.append(idx)
    raise MacroNoParenthesis()


def _split_arguments(text: str, open_idx: int, close_idx: int, commas: List[int]) -> List[str]:
    args = []
    start = open_idx + 1
    for comma_idx in commas:
        args.append(text[start:comma_idx].strip())
        start = comma_idx + 1
    args.append(text[start:close_idx].strip())
    return args


def _expand_invocation(macro: Macro, args: List[str], macros: MacroTable) -> str:
    if len(args) != len(macro.params):
        raise MacroIncorrectArgs(len(macro.params), len(args))

    arg_table: MacroTable = {}
    for param, arg in zip(macro.params, args):
        # Arguments may be incomplete on their own, fall back to the raw text.
        try:
            _, value = expand_macros(arg, macros)
        except PreprocessorError:
            value = arg
        arg_table[param] = Value(value)

    _, body = expand_macros(macro.body, arg_table)
    return body


def expand_macros(line: str, macros: MacroTable) -> Tuple[bool, str]:
    """
    Run one substitution pass over a line.

    Returns whether anything changed along with the new line. Scanning resumes
    after each replacement, so nested invocations are left for the next pass.
    """
    result = line
    i = 0
    while i < len(result):
        match = _IDENT_RE.search(result, i)
        if match is None:
            break
        id_start, id_end = match.span()
        definition = macros.get(match.group())

        if isinstance(definition, Value):
            result = result[:id_start] + definition.text + result[id_end:]
            i = id_start + len(definition.text)
        elif isinstance(definition, Macro):
            if result[id_end:id_end + 1] != "(":
                i = id_end
                continue
            close_idx, commas = _find_invocation_close(result, id_end)
            args = _split_arguments(result, id_end, close_idx, commas)
            expansion = _expand_invocation(definition, args, macros)
            result = result[:id_start] + expansion + result[close_idx + 1:]
            i = id_start + len(expansion)
        else:
            i = id_end

    return result != line, result


def expand_line(line: str, macros: MacroTable) -> str:
    """Substitute macros until the line stops changing."""
    changed = True
    while changed:
        changed, line = expand_macros(line, macros)
    return line


def _define(directive_line: str, args: List[str], macros: MacroTable) -> None:
    if len(args) < 3:
        raise IncludeIncorrectArgs("#define")

    match = _DEFINE_MACRO_RE.search(directive_line[len(args[0]):])
    if match:
        name, params, body = match.groups()
        macros[name] = Macro([param.strip() for param in params.split(",")], body)
        log.debug("defined macro %s(%s)", name, params)
    else:
        name = args[1]
        macros[name] = Value(" ".join(args[2:]))
        log.debug("defined %s", name)


def _undef(args: List[str], macros: MacroTable) -> None:
    if len(args) != 2:
        raise IncludeIncorrectArgs("#undef")
    if macros.pop(args[1], None) is not None:
        log.debug("undefined %s", args[1])


def _include(args: List[str], basepath: str, context: PreprocessContext) -> str:
    if len(args) != 2:
        raise IncludeIncorrectArgs()

    dest_path = args[1]
    quoted = len(dest_path) >= 2 and dest_path.startswith('"') and dest_path.endswith('"')
    angled = dest_path.startswith("<") and dest_path.endswith(">")
    if not (quoted or angled):
        raise IncludeIncorrectArgs()

    return _preprocess(dest_path[1:-1], basepath, context)


def process_directive(line: str, basepath: str, context: PreprocessContext) -> str:
    """
    Execute the directive starting at the first '#' of the line, if any.

    The directive is replaced by what it produced: the included text for
    #include, nothing for #define and #undef.
    """
    directive_idx = line.find("#")
    if directive_idx == -1:
        return line

    directive_line = line[directive_idx:]
    args = directive_line.split()
    keyword = args[0]

    content = ""
    if keyword == "#include":
        content = _include(args, basepath, context)
    elif keyword == "#define":
        _define(directive_line, args, context.macros)
    elif keyword == "#undef":
        _undef(args, context.macros)
    else:
        raise UnknownDirective(keyword)

    return line[:directive_idx] + content


def _read_lines(path: str, filename: str) -> List[str]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return [line.rstrip("\n") for line in f]
    except UnicodeDecodeError as e:
        raise FileNotValidUtf8(filename) from e
    except OSError as e:
        raise FileNotFound(filename, path) from e


def _preprocess(filename: str, basepath: str, context: PreprocessContext) -> str:
    source_path = os.path.join(basepath, filename)
    canonical_path = os.path.realpath(source_path)

    if canonical_path in context.visited:
        log.debug("skipping already included %s", canonical_path)
        return ""
    context.visited.add(canonical_path)

    log.debug("entering %s", canonical_path)
    lines = _read_lines(source_path, filename)
    source_dir = os.path.dirname(os.path.abspath(source_path))

    contents = []
    in_block_comment = False
    i = 0
    while i < len(lines):
        line = lines[i]
        while line.endswith("\\"):
            line = line[:-1]
            i += 1
            if i >= len(lines):
                break
            line += lines[i]

        line, in_block_comment = strip_comments(line, in_block_comment)
        if in_block_comment:
            i += 1
            continue

        line = process_directive(line, source_dir, context)
        line = expand_line(line, context.macros)

        contents.append(line)
        contents.append("\n")
        i += 1

    return "".join(contents)


def preprocess(filename: str, basepath: str = ".") -> str:
    """
    Load a shader relative to basepath and expand it.

    Raises the first PreprocessorError met anywhere in the include tree.
    """
    return _preprocess(filename, basepath, PreprocessContext())


def naga_validator(executable: str = "naga") -> Validator:
    """Build a validator that runs the naga CLI over the expanded shader."""
    def validate(source: str) -> Optional[str]:
        fd, path = tempfile.mkstemp(suffix=".wgsl")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(source)
            try:
                proc = subprocess.run([executable, path], capture_output=True, text=True)
            except OSError as e:
                return f"failed to run WGSL validator {executable}: {e}"
            if proc.returncode != 0:
                output = (proc.stderr or proc.stdout).strip()
                return f"failed to validate WGSL: {output}"
            return None
        finally:
            os.remove(path)

    return validate


class ShaderBuilder:
    def __init__(self, build_dir: str = "build", extensions: Tuple[str, ...] = (".wgsl",),
                 validator: Optional[Validator] = None):
        self.build_dir = build_dir
        self.extensions = tuple(extensions)
        self.validator = validator

    def is_shader(self, filepath: str) -> bool:
        return filepath.endswith(self.extensions)

    def process_file(self, filepath: str) -> str:
        """Expand one shader file and validate the result."""
        filepath = os.path.abspath(filepath)
        source = preprocess(os.path.basename(filepath), os.path.dirname(filepath))

        if self.validator is not None:
            message = self.validator(source)
            if message is not None:
                raise ShaderValidationError(message)
        return source

    def check_build_dir(self, source_dir: str) -> str:
        """Return the absolute build directory, refusing one that holds the sources."""
        source_dir = os.path.abspath(source_dir)
        build_dir = os.path.abspath(self.build_dir)
        if os.path.commonpath([build_dir, source_dir]) == build_dir:
            raise ValueError(f"build directory {build_dir} must not contain the source directory")
        return build_dir

    def build(self, source_dir: str = ".") -> List[Tuple[str, Exception]]:
        """
        Mirror every shader under source_dir into the build directory.

        Returns the shaders that failed together with their errors; a failing
        shader does not stop the rest of the build.
        """
        source_dir = os.path.abspath(source_dir)
        build_dir = self.check_build_dir(source_dir)

        if os.path.exists(build_dir):
            shutil.rmtree(build_dir)
        os.makedirs(build_dir)

        failures: List[Tuple[str, Exception]] = []
        for root, dirs, files in os.walk(source_dir):
            dirs[:] = sorted(d for d in dirs if os.path.join(root, d) != build_dir)

            for file in sorted(files):
                if not self.is_shader(file):
                    continue

                source_path = os.path.join(root, file)
                rel_path = os.path.relpath(source_path, source_dir)
                build_path = os.path.join(build_dir, rel_path)

                try:
                    processed_content = self.process_file(source_path)
                except (PreprocessorError, ShaderValidationError) as e:
                    print(f"Error processing {source_path}:")
                    print(f"  {str(e)}")
                    failures.append((source_path, e))
                    continue

                os.makedirs(os.path.dirname(build_path), exist_ok=True)
                with open(build_path, 'w', encoding='utf-8') as f:
                    f.write(processed_content)

        return failures
