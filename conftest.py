import pytest
from pathlib import Path
from authorcov import AuthorcovConfig, ProgressReporter, Project

CLASS_BYTES = b"\xca\xfe\xba\xbe"


def java_source(class_name, date=None, author=None, package="com.example", body=""):
    """Source text of a class whose Javadoc carries the given tags."""
    lines = [f"package {package};", "", "/**", f" * {class_name} does things."]
    if author is not None:
        lines.append(f" * @author {author}")
    if date is not None:
        lines.append(f" * @date {date}")
    lines += [" */", f"public class {class_name} {{", body, "}", ""]
    return "\n".join(lines)


def pom_xml(artifact_id, packaging="jar", modules=(), dependencies=(), group_id="com.example"):
    mods = "".join(f"<module>{m}</module>" for m in modules)
    deps = "".join(
        f"<dependency><groupId>{g}</groupId><artifactId>{a}</artifactId><scope>{s}</scope></dependency>"
        for g, a, s in dependencies
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<project xmlns="http://maven.apache.org/POM/4.0.0">'
        "<modelVersion>4.0.0</modelVersion>"
        f"<groupId>{group_id}</groupId><artifactId>{artifact_id}</artifactId>"
        f"<version>1.0</version><packaging>{packaging}</packaging>"
        f"<modules>{mods}</modules><dependencies>{deps}</dependencies>"
        "</project>"
    )


class JavaTree:
    """Maven-style module layout under a base directory."""

    def __init__(self, basedir: Path):
        self.basedir = basedir
        self.source_dir = basedir / "src" / "main" / "java"
        self.output_dir = basedir / "target" / "classes"

    def add_source(self, relative, date=None, author=None, text=None):
        path = self.source_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        class_name = Path(relative).stem
        package = ".".join(Path(relative).parent.parts) or "com.example"
        path.write_text(text or java_source(class_name, date, author, package), encoding="utf-8")
        return path

    def add_class(self, relative):
        path = self.output_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(CLASS_BYTES)
        return path

    def project(self, artifact_id="demo", packaging="jar"):
        return Project(artifact_id=artifact_id, basedir=self.basedir, packaging=packaging)


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def config():
    return AuthorcovConfig(jobs=4)


@pytest.fixture
def java_tree(tmp_path):
    return JavaTree(tmp_path / "demo")


@pytest.fixture
def maven_project(tmp_path):
    """Single jar module: two tagged classes (one with nested classes), one untagged."""
    tree = JavaTree(tmp_path / "demo")
    tree.basedir.mkdir(parents=True)
    (tree.basedir / "pom.xml").write_text(pom_xml("demo"), encoding="utf-8")

    tree.add_source("com/example/Foo.java", "2024/3/15", "Alice/team1")
    tree.add_source("com/example/Bar.java", "2024-04-02", "Bob")
    tree.add_source("com/example/Untagged.java")
    for name in ("Foo", "Foo$1", "Foo$Inner", "FooBarBaz", "Bar", "Untagged"):
        tree.add_class(f"com/example/{name}.class")
    return tree


@pytest.fixture
def multi_module(tmp_path):
    """
    Aggregator pom with modules core (compile), web (runtime) and testkit
    (test scope, so never reported).
    """
    root = tmp_path / "parent"
    root.mkdir()
    (root / "pom.xml").write_text(
        pom_xml(
            "parent",
            packaging="pom",
            modules=("core", "web", "testkit"),
            dependencies=(
                ("com.example", "core", "compile"),
                ("com.example", "web", "runtime"),
                ("com.example", "testkit", "test"),
                ("junit", "junit", "compile"),
            ),
        ),
        encoding="utf-8",
    )
    trees = {}
    for name in ("core", "web", "testkit"):
        tree = JavaTree(root / name)
        tree.basedir.mkdir()
        (tree.basedir / "pom.xml").write_text(pom_xml(name), encoding="utf-8")
        trees[name] = tree

    trees["core"].add_source("com/example/core/Engine.java", "2024/1/10", "Alice")
    trees["core"].add_class("com/example/core/Engine.class")
    trees["web"].add_source("com/example/web/Controller.java", "2024/2/20", "Bob/web")
    trees["web"].add_class("com/example/web/Controller.class")
    trees["web"].add_class("com/example/web/Controller$Handler.class")
    trees["testkit"].add_source("com/example/testkit/Fixture.java", "2024/2/1", "Carol")
    trees["testkit"].add_class("com/example/testkit/Fixture.class")
    return root, trees
