from governance_runtime.artifacts.declarations import read_ls_declarations, read_python_declarations

LS_DOCUMENT = '''goal "Ship \\"stable\\" release"
capability publish "Publish release artifacts"
  check smoke_tests "Run smoke tests"
'''


def test_ls_document_declarations():
    declarations = read_ls_declarations(LS_DOCUMENT)

    assert [(d.kind, d.symbol_path) for d in declarations] == [
        ("goal", "goal"),
        ("capability", "capability:publish"),
        ("check", "check:smoke_tests"),
    ]
    assert declarations[0].name == 'Ship "stable" release'
    assert declarations[1].description == "Publish release artifacts"
    assert declarations[2].range.to_dict() == {"start_line": 3, "start_column": 3, "end_line": 3, "end_column": 38}


def test_ls_document_requires_leading_goal():
    assert read_ls_declarations('capability publish "x"\ngoal "y"\ncheck c "z"\n') is None


def test_ls_document_requires_capability_and_check():
    assert read_ls_declarations('goal "y"\ncapability publish "x"\n') is None
    assert read_ls_declarations('goal "y"\ncheck c "z"\n') is None


def test_ls_document_rejects_unknown_lines():
    assert read_ls_declarations('goal "y"\ncapability publish "x"\ncheck c "z"\nrun now\n') is None


def test_python_declarations_include_methods():
    source = '''class ReleaseManager:
    """Coordinates releases.

    Longer text.
    """

    def publish(self):
        pass


async def publish_release(tag):
    return tag
'''

    declarations = read_python_declarations(source)

    assert [d.symbol_path for d in declarations] == [
        "class:ReleaseManager",
        "function:ReleaseManager.publish",
        "function:publish_release",
    ]
    assert declarations[0].description == "Coordinates releases."
    assert declarations[2].range.start_line == 11


def test_python_syntax_error_is_none():
    assert read_python_declarations("def broken(:\n") is None
