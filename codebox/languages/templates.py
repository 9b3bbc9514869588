"""
Starter code templates for runnable languages.
"""

from collections.abc import Mapping
from types import MappingProxyType

from .registry import get_language

DEFAULT_TEMPLATE = "hello"

_TEMPLATES: Mapping[str, Mapping[str, str]] = MappingProxyType(
    {
        "javascript": {
            "hello": 'console.log("Hello, World!");\n',
            "loops": (
                "const numbers = [1, 2, 3, 4, 5];\n"
                "for (const n of numbers) {\n"
                "    console.log(`Number: ${n}`);\n"
                "}\n"
                'console.log("Doubled:", numbers.map(n => n * 2).join(", "));\n'
            ),
        },
        "python": {
            "hello": 'print("Hello, World!")\n',
            "loops": (
                "numbers = [1, 2, 3, 4, 5]\n"
                "for n in numbers:\n"
                '    print(f"Number: {n}")\n'
                'print("Doubled:", ", ".join(str(n * 2) for n in numbers))\n'
            ),
            "input": "name = input()\nprint(f\"Hello, {name}!\")\n",
        },
        "ruby": {"hello": 'puts "Hello, World!"\n'},
        "php": {"hello": '<?php\necho "Hello, World!\\n";\n'},
        "go": {
            "hello": (
                "package main\n\n"
                'import "fmt"\n\n'
                "func main() {\n"
                '    fmt.Println("Hello, World!")\n'
                "}\n"
            )
        },
        "rust": {"hello": 'fn main() {\n    println!("Hello, World!");\n}\n'},
        "java": {
            "hello": (
                "public class Main {\n"
                "    public static void main(String[] args) {\n"
                '        System.out.println("Hello, World!");\n'
                "    }\n"
                "}\n"
            )
        },
        "cpp": {
            "hello": (
                "#include <iostream>\n\n"
                "int main() {\n"
                '    std::cout << "Hello, World!" << std::endl;\n'
                "    return 0;\n"
                "}\n"
            )
        },
        "c": {
            "hello": (
                "#include <stdio.h>\n\n"
                "int main(void) {\n"
                '    printf("Hello, World!\\n");\n'
                "    return 0;\n"
                "}\n"
            )
        },
        "csharp": {"hello": 'Console.WriteLine("Hello, World!");\n'},
        "typescript": {
            "hello": 'const greeting: string = "Hello, World!";\nconsole.log(greeting);\n'
        },
        "swift": {"hello": 'print("Hello, World!")\n'},
        "kotlin": {"hello": 'fun main() {\n    println("Hello, World!")\n}\n'},
        "scala": {"hello": '@main def hello(): Unit =\n  println("Hello, World!")\n'},
        "r": {"hello": 'cat("Hello, World!\\n")\n'},
        "lua": {"hello": 'print("Hello, World!")\n'},
        "dart": {"hello": "void main() {\n  print('Hello, World!');\n}\n"},
        "perl": {"hello": 'print "Hello, World!\\n";\n'},
        "bash": {"hello": 'echo "Hello, World!"\n'},
    }
)


def available_templates(language_id: str) -> list[str]:
    """Return template kinds for a language (empty for non-runnable ones)."""
    descriptor = get_language(language_id)
    return sorted(_TEMPLATES.get(descriptor.id, {}))


def get_template(language_id: str, kind: str = DEFAULT_TEMPLATE) -> str:
    """
    Return starter code for a language.

    Unknown kinds fall back to the ``hello`` template.
    """
    descriptor = get_language(language_id)
    templates = _TEMPLATES.get(descriptor.id)
    if not templates:
        return f"// No template available for {descriptor.name}\n"
    return templates.get(kind) or templates[DEFAULT_TEMPLATE]
