import io

import numpy as np
import pytest

from stereoslam.lie import SE3
from stereoslam.posegraph import (
    PoseEdge,
    PoseGraph,
    PoseVertex,
    jr_inv,
    main,
)

INFO = " ".join(str(i) for i in range(1, 22))
GRAPH_TEXT = (
    "VERTEX_SE3:QUAT 0 0 0 0 0 0 0 1\n"
    "VERTEX_SE3:QUAT 1 1 0 0 0 0 0 1\n"
    "FIX 1\n"
    f"EDGE_SE3:QUAT 0 1 1 0 0 0 0 0 1 {INFO}\n"
)


def _poses():
    return [
        SE3(),
        SE3.exp([1.0, 0.2, 0.0, 0.0, 0.0, 0.3]),
        SE3.exp([2.0, 0.5, 0.1, 0.05, -0.1, 0.6]),
        SE3.exp([2.5, 1.5, -0.2, 0.1, 0.0, 1.0]),
    ]


def _chain_graph(perturb):
    truth = _poses()
    graph = PoseGraph()
    rng = np.random.default_rng(3)
    for k, pose in enumerate(truth):
        estimate = pose if k == 0 or not perturb else SE3.exp(rng.normal(0, 0.05, 6)) @ pose
        graph.add_vertex(PoseVertex(k, estimate, fixed=k == 0))
    pairs = [(0, 1), (1, 2), (2, 3), (0, 3), (1, 3)]
    for n, (i, j) in enumerate(pairs):
        graph.add_edge(PoseEdge(n, i, j, truth[i].inverse() @ truth[j]))
    return graph, truth


def test_jr_inv_is_identity():
    assert np.array_equal(jr_inv(SE3.exp([0.1, 0.2, 0.3, 0.4, 0.5, 0.6])), np.eye(6))


def test_jr_inv_rejects_non_transform():
    with pytest.raises(TypeError):
        jr_inv(np.zeros(6))


def test_error_zero_for_consistent_measurement():
    v1 = SE3.exp([0.3, -0.1, 0.2, 0.1, 0.2, -0.3])
    v2 = SE3.exp([1.0, 0.5, -0.4, -0.2, 0.1, 0.4])
    edge = PoseEdge(0, 0, 1, v1.inverse() @ v2)
    assert np.allclose(edge.compute_error(v1, v2), 0.0, atol=1e-9)


def test_jacobians_match_numerical_derivative():
    v1 = SE3.exp([0.3, -0.1, 0.2, 0.1, 0.2, -0.3])
    v2 = SE3.exp([1.0, 0.5, -0.4, -0.2, 0.1, 0.4])
    edge = PoseEdge(0, 0, 1, v1.inverse() @ v2)
    ji, jj = edge.linearize(v1, v2)
    assert np.allclose(ji, -jj)
    h = 1e-6
    for k in range(6):
        d = np.zeros(6)
        d[k] = h
        num_i = (edge.compute_error(SE3.exp(d) @ v1, v2)
                 - edge.compute_error(SE3.exp(-d) @ v1, v2)) / (2 * h)
        num_j = (edge.compute_error(v1, SE3.exp(d) @ v2)
                 - edge.compute_error(v1, SE3.exp(-d) @ v2)) / (2 * h)
        assert np.allclose(num_i, ji[:, k], atol=1e-5)
        assert np.allclose(num_j, jj[:, k], atol=1e-5)


def test_read_parses_vertices_edges_and_information():
    graph = PoseGraph.read(io.StringIO(GRAPH_TEXT))
    assert sorted(graph.vertices) == [0, 1]
    assert graph.vertices[0].fixed
    assert not graph.vertices[1].fixed
    assert np.allclose(graph.vertices[1].estimate.translation, [1, 0, 0])
    (edge,) = graph.edges
    assert (edge.first, edge.second) == (0, 1)
    assert edge.information[0, 1] == 2
    assert edge.information[1, 0] == 2
    assert edge.information[5, 5] == 21
    assert np.allclose(edge.information, edge.information.T)
    assert graph.total_error() == pytest.approx(0.0, abs=1e-12)


def test_write_read_round_trip():
    graph, _ = _chain_graph(perturb=True)
    buffer = io.StringIO()
    graph.write(buffer)
    text = buffer.getvalue()
    assert text.startswith("VERTEX_SE3:QUAT 0 ")
    assert "EDGE_SE3:QUAT 0 1 " in text
    again = PoseGraph.read(io.StringIO(text))
    assert list(again.vertices) == list(graph.vertices)
    for vid, vertex in graph.vertices.items():
        assert np.allclose(again.vertices[vid].estimate.matrix(), vertex.estimate.matrix())
    for a, b in zip(again.edges, graph.edges):
        assert (a.first, a.second) == (b.first, b.second)
        assert np.allclose(a.measurement.matrix(), b.measurement.matrix())
        assert np.allclose(a.information, b.information)


def test_read_rejects_short_vertex():
    with pytest.raises(ValueError):
        PoseGraph.read(io.StringIO("VERTEX_SE3:QUAT 0 1 2\n"))


def test_read_rejects_edge_to_unknown_vertex():
    text = "VERTEX_SE3:QUAT 0 0 0 0 0 0 0 1\nEDGE_SE3:QUAT 0 5 0 0 0 0 0 0 1\n"
    with pytest.raises(ValueError):
        PoseGraph.read(io.StringIO(text))


def test_add_edge_unknown_vertex_raises():
    graph = PoseGraph()
    graph.add_vertex(PoseVertex(0))
    with pytest.raises(KeyError):
        graph.add_edge(PoseEdge(0, 0, 1))


def test_add_duplicate_vertex_raises():
    graph = PoseGraph()
    graph.add_vertex(PoseVertex(0))
    with pytest.raises(ValueError):
        graph.add_vertex(PoseVertex(0))


def test_optimize_recovers_true_poses():
    graph, truth = _chain_graph(perturb=True)
    before = graph.total_error()
    after = graph.optimize(30)
    assert after < before
    assert after == pytest.approx(0.0, abs=1e-8)
    assert graph.total_error() == pytest.approx(after)
    for k, pose in enumerate(truth):
        assert np.allclose(graph.vertices[k].estimate.matrix(), pose.matrix(), atol=1e-4)


def test_optimize_keeps_fixed_vertex():
    graph, truth = _chain_graph(perturb=True)
    graph.optimize(5)
    assert np.allclose(graph.vertices[0].estimate.matrix(), truth[0].matrix())


def test_main_usage_and_missing_file(tmp_path):
    assert main([]) == 1
    assert main([str(tmp_path / "absent.g2o")]) == 1


def test_main_writes_result(tmp_path, monkeypatch, capsys):
    source = tmp_path / "graph.g2o"
    source.write_text(GRAPH_TEXT)
    monkeypatch.chdir(tmp_path)
    assert main([str(source)]) == 0
    out = capsys.readouterr().out
    assert "read total 2 vertices, 1 edges." in out
    with open(tmp_path / "result_lie.g2o") as fin:
        result = PoseGraph.read(fin)
    assert sorted(result.vertices) == [0, 1]
    assert len(result.edges) == 1