#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import enum
import os
import threading
import time
from dataclasses import dataclass

import numpy as np
import torch
from loguru import logger
from tqdm import tqdm

from splatfit.errors import ConfigurationError, NumericalError, check_finite
from splatfit.losses.loss import PhotometricLoss
from splatfit.losses.utils import l1_loss, ssim
from splatfit.renderer.gs_renderer import (
    composite_background,
    fast_render,
    render,
    render_request,
)
from splatfit.strategy.default import DefaultStrategy
from splatfit.trainer.exporter import PlyExporter
from splatfit.utils.image_utils import psnr
from splatfit.utils.rwlock import ReadWriteLock


class TrainerState(enum.Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    PAUSED = 'paused'
    STOPPED = 'stopped'
    FINISHED = 'finished'
    FAILED = 'failed'


@dataclass(frozen=True)
class TrainingStatus:
    iteration: int
    loss: float
    num_gaussians: int
    state: TrainerState
    active_sh_degree: int = 0


class Trainer:
    """
    Runs the optimisation loop over a SplatData population.

    The Gaussian tensors are shared with viewers through a reader-writer
    lock: the optimizer step and density control run under the exclusive
    side, `render_for_viewer` under the shared side. Forward and backward
    only read the tensors and run unlocked.
    """

    def __init__(self, splats, train_dataset, opt_params, output_path,
                 val_dataset=None, device=None):
        opt_params.validate()
        if len(train_dataset) == 0:
            raise ConfigurationError("Training split is empty")
        self.splats = splats
        self.train_dataset = train_dataset
        self.val_dataset = val_dataset
        self.params = opt_params
        self.output_path = output_path
        self.device = torch.device(device) if device is not None else splats.means.device

        self.optimizer = splats.setup_optimizer(opt_params)
        self.strategy = DefaultStrategy(opt_params)
        self.strategy.check_sanity(splats, self.optimizer)
        self.loss_fn = PhotometricLoss(
            lambda_dssim=opt_params.lambda_dssim,
            opacity_reg=opt_params.opacity_reg,
            scale_reg=opt_params.scale_reg,
        )
        self.bg_color = torch.tensor(
            [1.0, 1.0, 1.0] if opt_params.white_background else [0.0, 0.0, 0.0],
            dtype=torch.float32, device=self.device)

        self.lock = ReadWriteLock()
        self.exporter = PlyExporter()

        self._stop_event = threading.Event()
        self._resume_event = threading.Event()
        self._resume_event.set()
        self._thread = None
        self._subscribers = []
        self._subscribers_lock = threading.Lock()

        self._rng = np.random.default_rng(opt_params.seed)
        self._order = []

        self.iteration = 0
        self.state = TrainerState.IDLE
        self.loss_history = []
        self.eval_history = {}
        self.densify_reports = []
        self.skipped_iterations = 0
        self.error = None

    # observer channel
    def subscribe(self, callback):
        ''' Register callback(TrainingStatus); returns a function that unsubscribes it '''
        with self._subscribers_lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return unsubscribe

    def status(self):
        return TrainingStatus(
            iteration=self.iteration,
            loss=self.loss_history[-1] if self.loss_history else float('nan'),
            num_gaussians=self.num_gaussians,
            state=self.state,
            active_sh_degree=self.splats.active_sh_degree,
        )

    @property
    def num_gaussians(self):
        return self.splats.num_gaussians

    def _notify(self):
        status = self.status()
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(status)
            except Exception as e:
                logger.warning(f"Training status subscriber failed: {e!r}")

    def _set_state(self, state):
        self.state = state
        self._notify()

    # control
    def stop(self):
        self._stop_event.set()
        self._resume_event.set()

    def pause(self):
        if self.state == TrainerState.RUNNING:
            self._resume_event.clear()
            self._set_state(TrainerState.PAUSED)

    def resume(self):
        if self.state == TrainerState.PAUSED:
            self._set_state(TrainerState.RUNNING)
        self._resume_event.set()

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running:
            raise RuntimeError("Training is already running")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_guarded, name="trainer", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout=None):
        if self._thread is not None:
            self._thread.join(timeout)
        return not self.is_running

    def shutdown(self):
        self.stop()
        self.join()
        self.exporter.shutdown()

    def _run_guarded(self):
        try:
            self.run()
        except Exception as e:
            self.error = e
            logger.exception(f"Training failed at iteration {self.iteration}")

    # loop
    def next_sample(self):
        ''' Cameras in random order without replacement, reshuffled each epoch '''
        if not self._order:
            self._order = self._rng.permutation(len(self.train_dataset)).tolist()
        return self.train_dataset.get(self._order.pop())

    def train_step(self, iteration):
        p = self.params
        splats = self.splats

        with self.lock.write_locked():
            splats.update_learning_rate(self.optimizer, iteration)
            if iteration % p.sh_degree_interval == 0:
                splats.increment_sh_degree()

        camera, gt_image = self.next_sample()
        gt_image = gt_image.to(self.device)

        # statistics of this view only land in densification_info if the step is kept
        scratch = torch.zeros_like(splats.densification_info)
        render_pkg = fast_render(
            splats, camera, densification_info=scratch,
            eps2d=p.eps2d, near_plane=p.near_plane, far_plane=p.far_plane, tile_size=p.tile_size)
        image = composite_background(render_pkg["render"], render_pkg["alpha"], self.bg_color)

        loss, loss_dict, _ = self.loss_fn(image, gt_image, splats)
        loss.backward()

        accepted = True
        if p.check_finite:
            try:
                check_finite("loss", loss.detach())
                for name, param in splats.params.items():
                    check_finite(f"{name}.grad", param.grad)
            except NumericalError as e:
                logger.warning(f"[iter {iteration}] skipping optimizer step: {e}")
                accepted = False

        report = None
        with self.lock.write_locked():
            if accepted:
                splats.densification_info += scratch
                self.strategy.update_state(splats, render_pkg["radii"])
                self.optimizer.step()
            self.optimizer.zero_grad(set_to_none=True)
            if accepted:
                report = self.strategy.step_post_backward(splats, self.optimizer, iteration)

        if not accepted:
            self.skipped_iterations += 1
        if report is not None:
            self.densify_reports.append(report)
        return loss.item(), accepted

    def run(self):
        ''' Train up to `iterations` on the calling thread; a pending stop() ends the loop before its next iteration '''
        p = self.params
        first = self.iteration + 1
        if first > p.iterations:
            return self.status()

        self._set_state(TrainerState.RUNNING)
        ema_loss = 0.0
        progress_bar = tqdm(range(first, p.iterations + 1), desc="Training progress", initial=first - 1,
                            total=p.iterations)
        try:
            for iteration in progress_bar:
                while not self._resume_event.wait(timeout=0.1):
                    if self._stop_event.is_set():
                        break
                if self._stop_event.is_set():
                    logger.info(f"Training stopped before iteration {iteration}")
                    break

                loss, _ = self.train_step(iteration)
                self.iteration = iteration
                self.loss_history.append(loss)

                ema_loss = loss if iteration == first else 0.4 * loss + 0.6 * ema_loss
                if iteration % 10 == 0:
                    progress_bar.set_postfix({"Loss": f"{ema_loss:.7f}", "N": self.num_gaussians})

                if iteration in p.eval_steps:
                    self.evaluate(iteration)
                if iteration in p.save_steps or iteration == p.iterations:
                    self.save(iteration)
                self._notify()
        except Exception:
            self._set_state(TrainerState.FAILED)
            raise
        finally:
            progress_bar.close()
            self.exporter.join()

        self._set_state(TrainerState.STOPPED if self._stop_event.is_set() else TrainerState.FINISHED)
        return self.status()

    @torch.no_grad()
    def evaluate(self, iteration):
        if self.val_dataset is None or len(self.val_dataset) == 0:
            return None
        p = self.params
        metrics = {"psnr": 0.0, "ssim": 0.0, "l1": 0.0}
        start = time.time()
        with self.lock.read_locked():
            for i in range(len(self.val_dataset)):
                camera, gt_image = self.val_dataset.get(i)
                gt_image = gt_image.to(self.device)
                out = render(self.splats, camera, bg_color=self.bg_color,
                             eps2d=p.eps2d, near_plane=p.near_plane, far_plane=p.far_plane,
                             tile_size=p.tile_size)
                image = out["render"].clamp(0.0, 1.0)
                metrics["psnr"] += psnr(image, gt_image).item()
                metrics["ssim"] += ssim(image[None], gt_image[None]).item()
                metrics["l1"] += l1_loss(image, gt_image).item()
        metrics = {k: v / len(self.val_dataset) for k, v in metrics.items()}
        metrics["num_gaussians"] = self.num_gaussians
        metrics["time"] = time.time() - start
        self.eval_history[iteration] = metrics
        logger.info(f"[iter {iteration}] eval: PSNR {metrics['psnr']:.3f}, SSIM {metrics['ssim']:.4f}, "
                    f"L1 {metrics['l1']:.4f}, {metrics['num_gaussians']} Gaussians")
        return metrics

    def save(self, iteration):
        with self.lock.read_locked():
            snapshot = self.splats.snapshot()
        path = os.path.join(self.output_path, "point_cloud", f"iteration_{iteration}", "point_cloud.ply")
        return self.exporter.submit(snapshot, path)

    def save_checkpoint(self, path=None):
        if path is None:
            path = os.path.join(self.output_path, f"chkpnt{self.iteration}.pth")
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with self.lock.read_locked():
            state = self.splats.state_dict(self.optimizer)
            state["iteration"] = self.iteration
            torch.save(state, path)
        logger.info(f"Saved checkpoint to {path}")
        return path

    def load_checkpoint(self, path):
        state = torch.load(path, map_location=self.device)
        with self.lock.write_locked():
            self.optimizer = self.splats.restore(state, self.params)
            self.iteration = state.get("iteration", 0)
        logger.info(f"Restored checkpoint {path} at iteration {self.iteration}")

    def render_for_viewer(self, request):
        p = self.params
        with self.lock.read_locked():
            return render_request(self.splats, request, eps2d=p.eps2d, near_plane=p.near_plane,
                                  far_plane=p.far_plane, tile_size=p.tile_size)
