from typing import Any, Iterable, Mapping

from graphgrad.compute import backward_pass, forward_pass, seed_grad


def train_step(
    loss_node: Any,
    model: Any,
    optimizer: Any,
    input_to_vals: Mapping[str, Any],
) -> float:
    """
    Run one forward/backward cycle on a scalar loss graph and update parameters.

    Parameters
    ----------
    loss_node : Node
        Root of the loss graph. Must evaluate to a single element.
    model : Model
        Owner of the parameters referenced by the graph.
    optimizer : Optimizer
        Optimizer over ``model.params()``.
    input_to_vals : mapping of str to array-like
        Values for the graph's ``input`` nodes.

    Returns
    -------
    float
        Loss value before the update.
    """
    optimizer.zero_grad()
    out = forward_pass(loss_node, model, input_to_vals)
    # read before backward hands the buffer back to the pool
    loss = float(out.value.item())
    seed_grad(out, model)
    backward_pass(out)
    optimizer.step()
    return loss


def fit(
    loss_node: Any,
    model: Any,
    optimizer: Any,
    batches: Iterable[Mapping[str, Any]],
    num_epochs: int = 10,
    verbose: bool = True,
) -> dict:
    """
    Train for multiple epochs over a re-iterable collection of input batches.

    Parameters
    ----------
    loss_node : Node
        Root of the scalar loss graph.
    model : Model
        Owner of the parameters.
    optimizer : Optimizer
        Optimizer used for parameter updates.
    batches : iterable of mappings
        Each element binds the graph's ``input`` reference names for one step.
        Iterated once per epoch, so it must be re-iterable (e.g. a list).
    num_epochs : int, default=10
        Number of epochs to train.
    verbose : bool, default=True
        Print one progress line per epoch.

    Returns
    -------
    dict
        History with key ``"train_loss"``: the mean batch loss of every epoch.
    """
    history = {"train_loss": []}

    for epoch in range(num_epochs):
        total_loss = 0.
        n_batches = 0
        for input_to_vals in batches:
            total_loss += train_step(loss_node, model, optimizer, input_to_vals)
            n_batches += 1

        train_loss = total_loss / max(1, n_batches)
        history["train_loss"].append(train_loss)

        if verbose:
            lr_str = f" lr={optimizer.lr:.6g}" if hasattr(optimizer, "lr") else ""
            print(f"Epoch {epoch+1}/{num_epochs},{lr_str} Train: {train_loss:.4f}")

    return history
