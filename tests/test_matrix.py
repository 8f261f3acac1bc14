"""Dense column-major Matrix, its views, and packed SymMatrix storage."""

import numpy as np
import pytest

from blocksqp.aux.matrix import Matrix, MatrixViewError, SymMatrix, transpose


def test_write_then_read_tuple_and_flat():
    A = Matrix(3, 2)
    for j in range(2):
        for i in range(3):
            A[i, j] = 10 * i + j
    for j in range(2):
        for i in range(3):
            assert A[i, j] == 10 * i + j
            # flat index is column-major
            assert A[i + 3 * j] == 10 * i + j
    np.testing.assert_array_equal(A.array, [[0, 1], [10, 11], [20, 21]])


def test_leading_dimension_is_at_least_rows():
    A = Matrix(4, 2, ldim=2)
    assert A.ldim == 4
    B = Matrix(2, 3, ldim=5)
    assert B.ldim == 5
    B[1, 2] = 7.0
    assert B.array[1, 2] == 7.0


def test_out_of_range_access():
    A = Matrix(2, 2)
    with pytest.raises(IndexError):
        A[2, 0]
    with pytest.raises(IndexError):
        A[4] = 1.0


def test_view_aliases_parent_both_ways():
    A = Matrix.from_array(np.arange(12.0).reshape(4, 3, order="F"))
    V = A.submatrix(2, 2, 1, 1)
    assert V.is_view and not A.is_view
    assert V[0, 0] == A[1, 1]

    A[2, 2] = -1.0
    assert V[1, 1] == -1.0
    V[0, 1] = 99.0
    assert A[1, 2] == 99.0

    V.array[:, :] = 0.0
    np.testing.assert_array_equal(A.array[1:3, 1:3], 0.0)


def test_column_views_share_ring_buffer():
    buf = Matrix(3, 4)
    col = buf.column(2)
    col.vec[:] = [1.0, 2.0, 3.0]
    np.testing.assert_array_equal(buf.array[:, 2], [1.0, 2.0, 3.0])
    np.testing.assert_array_equal(buf.array[:, [0, 1, 3]], 0.0)


def test_view_of_view_keeps_owner():
    A = Matrix(4, 4)
    V = A.submatrix(3, 3, 1, 1)
    W = V.submatrix(2, 2, 1, 1)
    W[0, 0] = 5.0
    assert A[2, 2] == 5.0


def test_resizing_a_view_fails():
    A = Matrix(4, 4)
    V = A.submatrix(2, 2)
    with pytest.raises(MatrixViewError):
        V.dimension(3, 3)
    # same shape is not a resize
    assert V.dimension(2, 2) is V


def test_owner_resize_reallocates():
    A = Matrix(2, 2).initialize(1.0)
    A.dimension(3, 1)
    assert A.shape == (3, 1)
    np.testing.assert_array_equal(A.vec, 0.0)


@pytest.mark.parametrize("args", [(3, 1, 0, 0), (1, 1, 2, 0), (1, 2, 0, 1), (1, 1, -1, 0)])
def test_submatrix_out_of_bounds(args):
    A = Matrix(2, 2)
    with pytest.raises(MatrixViewError):
        A.submatrix(*args)


def test_assign_to_view_requires_matching_shape():
    A = Matrix(3, 3)
    V = A.submatrix(2, 2)
    V.assign(np.ones((2, 2)))
    assert A[1, 1] == 1.0 and A[2, 2] == 0.0
    with pytest.raises(MatrixViewError):
        V.assign(np.ones(3))


def test_initialize_with_generator_and_transpose():
    A = Matrix(2, 3).initialize(lambda i, j: i - j)
    T = transpose(A)
    assert T.shape == (3, 2)
    np.testing.assert_array_equal(T.array, A.array.T)
    assert not T.is_view


def test_symmatrix_symmetric_access():
    S = SymMatrix(4)
    S.initialize(lambda i, j: 1.0 + i + 10 * j)
    for i in range(4):
        for j in range(4):
            assert S[i, j] == S[j, i]
    assert S.packed.size == 10


def test_symmatrix_from_dense_uses_lower_triangle():
    rng = np.random.default_rng(0)
    a = rng.standard_normal((5, 5))
    S = SymMatrix.from_dense(a)
    lower = np.tril(a)
    expected = lower + lower.T - np.diag(np.diag(a))
    np.testing.assert_array_equal(S.to_dense(), expected)
    for i in range(5):
        for j in range(5):
            assert S[i, j] == S[j, i]


def test_symmatrix_from_matrix_and_packed_index():
    M = Matrix.from_array([[1.0, 2.0], [2.0, 3.0]])
    S = SymMatrix.from_dense(M)
    np.testing.assert_array_equal(S.packed, [1.0, 2.0, 3.0])
    assert SymMatrix.index(1, 0, 2) == SymMatrix.index(0, 1, 2) == 1


def test_symmatrix_has_no_views():
    with pytest.raises(MatrixViewError):
        SymMatrix(3).submatrix(2, 2)


def test_symmatrix_scale_and_copy_are_independent():
    S = SymMatrix(2).initialize(1.0)
    C = S.copy().scale(3.0)
    assert S[0, 1] == 1.0
    assert C[1, 0] == 3.0
