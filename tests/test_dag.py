"""Tests for model dependency resolution and execution."""

import pytest
import asyncio
from lens.core.errors import SchemaMismatchError
from lens.dag.resolver import DAGResolver, CycleError
from lens.dag.runner import DAGRunner, DAGRunResult
from lens.pipeline.decorators import ModelMetadata


# ─── Resolver Tests ───

class TestDAGResolver:
    def test_empty_dag(self):
        dag = DAGResolver()
        assert dag.topological_sort() == []
        assert dag.parallel_groups() == []

    def test_single_node(self):
        dag = DAGResolver()
        dag.add_model("a")
        assert dag.topological_sort() == ["a"]
        assert dag.parallel_groups() == [["a"]]

    def test_linear_chain(self):
        dag = DAGResolver()
        dag.add_dependency("extract", "transform")
        dag.add_dependency("transform", "load")
        order = dag.topological_sort()
        assert order.index("extract") < order.index("transform") < order.index("load")

    def test_diamond_dependency(self):
        """A → B, A → C, B → D, C → D"""
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        dag.add_dependency("A", "C")
        dag.add_dependency("B", "D")
        dag.add_dependency("C", "D")
        order = dag.topological_sort()
        assert order[0] == "A"
        assert order[-1] == "D"
        assert order.index("A") < order.index("B")
        assert order.index("A") < order.index("C")

    def test_parallel_groups_diamond(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        dag.add_dependency("A", "C")
        dag.add_dependency("B", "D")
        dag.add_dependency("C", "D")
        groups = dag.parallel_groups()
        assert groups[0] == ["A"]
        assert sorted(groups[1]) == ["B", "C"]
        assert groups[2] == ["D"]

    def test_parallel_groups_independent(self):
        """Staging models with no upstream share one group."""
        dag = DAGResolver()
        dag.add_model("src_movies")
        dag.add_model("src_ratings")
        dag.add_model("src_tags")
        groups = dag.parallel_groups()
        assert len(groups) == 1
        assert groups[0] == ["src_movies", "src_ratings", "src_tags"]

    def test_cycle_detection_simple(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        dag.add_dependency("B", "A")
        cycle = dag.detect_cycles()
        assert cycle is not None
        assert "A" in cycle and "B" in cycle

    def test_cycle_detection_three_node(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        dag.add_dependency("B", "C")
        dag.add_dependency("C", "A")
        cycle = dag.detect_cycles()
        assert cycle is not None

    def test_no_cycle(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        dag.add_dependency("B", "C")
        assert dag.detect_cycles() is None

    def test_topological_sort_raises_on_cycle(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        dag.add_dependency("B", "A")
        with pytest.raises(CycleError):
            dag.topological_sort()

    def test_get_upstream(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        dag.add_dependency("B", "C")
        dag.add_dependency("A", "C")
        upstream = dag.get_upstream("C")
        assert upstream == {"A", "B"}

    def test_get_downstream(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        dag.add_dependency("A", "C")
        dag.add_dependency("B", "D")
        downstream = dag.get_downstream("A")
        assert downstream == {"B", "C", "D"}

    def test_get_upstream_root(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        assert dag.get_upstream("A") == set()

    def test_get_downstream_leaf(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        assert dag.get_downstream("B") == set()

    def test_add_dependencies_bulk(self):
        dag = DAGResolver()
        dag.add_dependencies("load", ["extract", "transform"])
        assert dag.get_upstream("load") == {"extract", "transform"}

    def test_subgraph(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        dag.add_dependency("A", "C")
        dag.add_dependency("B", "D")
        dag.add_dependency("C", "D")
        dag.add_model("E")  # Unrelated

        sub = dag.get_subgraph("A")
        assert "E" not in sub.nodes
        assert set(sub.nodes.keys()) == {"A", "B", "C", "D"}

    def test_to_dict(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        d = dag.to_dict()
        assert "nodes" in d
        assert "edges" in d
        assert "groups" in d
        assert "A" in d["nodes"]
        assert "B" in d["nodes"]

    def test_complex_dag(self):
        """
        src_ratings → fct_ratings → mart_movie_ratings
        src_movies → dim_movies ↗
        src_ratings, src_tags → dim_users
        """
        dag = DAGResolver()
        dag.add_dependency("src_ratings", "fct_ratings")
        dag.add_dependency("src_movies", "dim_movies")
        dag.add_dependency("src_ratings", "dim_users")
        dag.add_dependency("src_tags", "dim_users")
        dag.add_dependency("fct_ratings", "mart_movie_ratings")
        dag.add_dependency("dim_movies", "mart_movie_ratings")

        groups = dag.parallel_groups()
        # First group: every raw source
        assert sorted(groups[0]) == ["src_movies", "src_ratings", "src_tags"]
        assert groups[1] == ["dim_movies", "dim_users", "fct_ratings"]
        # Last group: the mart
        assert groups[-1] == ["mart_movie_ratings"]

        order = dag.topological_sort()
        assert order.index("src_ratings") < order.index("fct_ratings")
        assert order.index("dim_movies") < order.index("mart_movie_ratings")
        assert order.index("fct_ratings") < order.index("mart_movie_ratings")


# ─── Runner Tests ───

class TestDAGRunner:
    @pytest.mark.asyncio
    async def test_run_linear_dag(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        dag.add_dependency("B", "C")

        execution_log = []

        async def mock_run(name: str) -> dict:
            execution_log.append(name)
            return {"status": "success"}

        runner = DAGRunner(dag, run_fn=mock_run, max_parallel=4)
        result = await runner.run()

        assert result.status == "success"
        assert execution_log == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_run_parallel_group(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        dag.add_dependency("A", "C")
        dag.add_dependency("B", "D")
        dag.add_dependency("C", "D")

        execution_log = []

        async def mock_run(name: str) -> dict:
            execution_log.append(name)
            return {"status": "success"}

        runner = DAGRunner(dag, run_fn=mock_run, max_parallel=4)
        result = await runner.run()

        assert result.status == "success"
        assert execution_log[0] == "A"
        assert set(execution_log[1:3]) == {"B", "C"}
        assert execution_log[3] == "D"

    @pytest.mark.asyncio
    async def test_failure_skips_downstream(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        dag.add_dependency("B", "C")

        async def mock_run(name: str) -> dict:
            if name == "B":
                return {"status": "failed", "error": "boom"}
            return {"status": "success"}

        runner = DAGRunner(dag, run_fn=mock_run)
        result = await runner.run()

        assert result.status == "partial"
        assert "B" in result.failed
        assert "C" in result.skipped

    @pytest.mark.asyncio
    async def test_fail_fast_mode(self):
        dag = DAGResolver()
        dag.add_model("A")
        dag.add_model("B")
        dag.add_dependency("A", "C")
        dag.add_dependency("B", "C")

        async def mock_run(name: str) -> dict:
            if name == "A":
                raise RuntimeError("fail")
            return {"status": "success"}

        runner = DAGRunner(dag, run_fn=mock_run, fail_fast=True)
        result = await runner.run()

        assert "A" in result.failed

    @pytest.mark.asyncio
    async def test_run_downstream(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        dag.add_dependency("B", "C")
        dag.add_model("D")  # Unrelated

        execution_log = []

        async def mock_run(name: str) -> dict:
            execution_log.append(name)
            return {"status": "success"}

        runner = DAGRunner(dag, run_fn=mock_run)
        result = await runner.run_downstream("A")

        assert "D" not in execution_log
        assert "A" in execution_log

    @pytest.mark.asyncio
    async def test_concurrency_limit(self):
        dag = DAGResolver()
        for i in range(10):
            dag.add_model(f"p{i}")

        max_concurrent = 0
        current = 0
        lock = asyncio.Lock()

        async def mock_run(name: str) -> dict:
            nonlocal max_concurrent, current
            async with lock:
                current += 1
                if current > max_concurrent:
                    max_concurrent = current
            await asyncio.sleep(0.01)
            async with lock:
                current -= 1
            return {"status": "success"}

        runner = DAGRunner(dag, run_fn=mock_run, max_parallel=3)
        result = await runner.run()

        assert result.status == "success"
        assert max_concurrent <= 3

    @pytest.mark.asyncio
    async def test_exception_in_run_fn(self):
        dag = DAGResolver()
        dag.add_model("A")

        async def mock_run(name: str) -> dict:
            raise ValueError("unexpected error")

        runner = DAGRunner(dag, run_fn=mock_run)
        result = await runner.run()

        assert "A" in result.failed
        assert "unexpected error" in result.results["A"]["error"]

    @pytest.mark.asyncio
    async def test_result_has_timing(self):
        dag = DAGResolver()
        dag.add_model("A")

        async def mock_run(name: str) -> dict:
            return {"status": "success"}

        runner = DAGRunner(dag, run_fn=mock_run)
        result = await runner.run()

        assert result.started_at is not None
        assert result.finished_at is not None
        assert result.duration_ms is not None
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_result_to_dict(self):
        dag = DAGResolver()
        dag.add_model("A")

        async def mock_run(name: str) -> dict:
            return {"status": "success"}

        runner = DAGRunner(dag, run_fn=mock_run)
        result = await runner.run()
        d = result.to_dict()

        assert "status" in d
        assert "results" in d
        assert "execution_order" in d

    @pytest.mark.asyncio
    async def test_empty_dag_runs_ok(self):
        dag = DAGResolver()
        async def mock_run(name: str) -> dict:
            return {"status": "success"}
        runner = DAGRunner(dag, run_fn=mock_run)
        result = await runner.run()
        assert result.status == "success"

    @pytest.mark.asyncio
    async def test_run_error_marks_failed_with_type(self):
        dag = DAGResolver()
        dag.add_dependency("fct_ratings", "mart_movie_ratings")

        async def mock_run(name: str) -> dict:
            raise SchemaMismatchError("fct_ratings", added=["extra"], missing=[])

        runner = DAGRunner(dag, run_fn=mock_run)
        result = await runner.run()

        assert result.status == "failed"
        assert result.results["fct_ratings"]["error_type"] == "SchemaMismatchError"
        assert "mart_movie_ratings" in result.skipped


class TestFromModels:
    def _meta(self, name, depends_on=()):
        return ModelMetadata(name=name, func=lambda ref: [], depends_on=list(depends_on))

    def test_builds_edges_from_depends_on(self):
        models = {
            "src_ratings": self._meta("src_ratings"),
            "fct_ratings": self._meta("fct_ratings", ["src_ratings"]),
            "mart_movie_ratings": self._meta("mart_movie_ratings", ["fct_ratings"]),
        }
        dag = DAGResolver.from_models(models)
        assert dag.topological_sort() == ["src_ratings", "fct_ratings", "mart_movie_ratings"]

    def test_unknown_dependency_raises(self):
        models = {"fct_ratings": self._meta("fct_ratings", ["src_nowhere"])}
        with pytest.raises(KeyError, match="src_nowhere"):
            DAGResolver.from_models(models)


class TestSelect:
    def _dag(self):
        dag = DAGResolver()
        dag.add_dependency("src_ratings", "fct_ratings")
        dag.add_dependency("fct_ratings", "mart_movie_ratings")
        dag.add_dependency("dim_movies", "mart_movie_ratings")
        dag.add_model("snap_tags")
        return dag

    def test_single_model(self):
        assert set(self._dag().select("fct_ratings").nodes) == {"fct_ratings"}

    def test_with_downstream(self):
        sub = self._dag().select("fct_ratings+")
        assert sub.topological_sort() == ["fct_ratings", "mart_movie_ratings"]

    def test_with_upstream(self):
        sub = self._dag().select("+mart_movie_ratings")
        assert set(sub.nodes) == {"src_ratings", "fct_ratings", "dim_movies", "mart_movie_ratings"}
        assert sub.parallel_groups()[-1] == ["mart_movie_ratings"]

    def test_both_directions(self):
        sub = self._dag().select("+fct_ratings+")
        assert set(sub.nodes) == {"src_ratings", "fct_ratings", "mart_movie_ratings"}

    def test_unknown_model(self):
        with pytest.raises(KeyError, match="Unknown model"):
            self._dag().select("nope+")

    def test_cycle_path_is_closed(self):
        dag = DAGResolver()
        dag.add_dependency("A", "B")
        dag.add_dependency("B", "C")
        dag.add_dependency("C", "A")
        dag.add_dependency("C", "D")
        cycle = dag.detect_cycles()
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"A", "B", "C"}

    @pytest.mark.asyncio
    async def test_runner_honours_selector(self):
        ran = []

        async def mock_run(name: str) -> dict:
            ran.append(name)
            return {"status": "success"}

        runner = DAGRunner(self._dag(), run_fn=mock_run)
        result = await runner.run(select="+fct_ratings")

        assert ran == ["src_ratings", "fct_ratings"]
        assert result.execution_order == [["src_ratings"], ["fct_ratings"]]
